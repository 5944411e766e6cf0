from __future__ import annotations

import functools
import logging
import threading
import time
from collections.abc import Callable
from typing import Any

from gsingress.src.annotations import (
    ANNOTATION_INGRESS_DELAY,
    ANNOTATION_INGRESS_MODE,
    DurationError,
)
from gsingress.src.config import ControllerConfig
from gsingress.src.dispatch import Deferred, KeyedDispatcher
from gsingress.src.events import EventRecorder
from gsingress.src.gameserver import (
    SKIP_DISALLOWED_STATE,
    SKIP_MISSING_ANNOTATION,
    SKIP_SHUTDOWN,
    GameServer,
    skip_reason,
)
from gsingress.src.kube import KubeClients
from gsingress.src.metrics import METRICS
from gsingress.src.reconcilers import (
    GameServerNotFoundError,
    GameServerReconciler,
    IngressConfigError,
    IngressReconciler,
    ReconcileOutcome,
    ServiceReconciler,
)
from gsingress.src.stores import ObjectStore

STEP_SERVICE = "service"
STEP_DELAY = "delay"
STEP_INGRESS = "ingress"
STEP_GAMESERVER = "gameserver"


class ReconcileError(RuntimeError):
    """A pipeline step failed for one GameServer.

    ``step`` names the failing step and ``key`` the ``namespace/name`` of the
    GameServer; the underlying error is chained as ``__cause__``.
    """

    def __init__(self, step: str, key: str, message: str) -> None:
        super().__init__(message)
        self.step = step
        self.key = key


def is_retryable(exc: BaseException) -> bool:
    """Return False for failures that another attempt with the same snapshot cannot fix."""
    cause = exc.__cause__ if isinstance(exc, ReconcileError) else exc
    return not isinstance(cause, (DurationError, IngressConfigError, GameServerNotFoundError))


class GameServerEventHandler:
    """Receives GameServer notifications and drives the Service/Ingress pipeline.

    ``on_add``/``on_update`` filter the snapshot through the annotation policy
    and hand eligible ones to the dispatcher, returning immediately.  The
    pipeline then runs on the dispatcher's workers:

    1. reconcile the Service;
    2. wait for the ``octops.io/ingress-delay`` duration, if annotated, on a
       dispatcher timer rather than a worker;
    3. reconcile the Ingress;
    4. write ingress status back onto the GameServer.

    A failing step aborts the run with a :class:`ReconcileError`.  Errors are
    handled by the dispatcher and never reach the watch loop.
    """

    def __init__(
        self,
        service_reconciler: ServiceReconciler,
        ingress_reconciler: IngressReconciler,
        gameserver_reconciler: GameServerReconciler,
        dispatcher: KeyedDispatcher,
        recorder: EventRecorder | None = None,
        logger: logging.Logger | None = None,
        wait_fn: Callable[[float], bool] | None = None,
    ) -> None:
        self.service_reconciler = service_reconciler
        self.ingress_reconciler = ingress_reconciler
        self.gameserver_reconciler = gameserver_reconciler
        self.dispatcher = dispatcher
        self.recorder = recorder
        self.logger = logger or logging.getLogger(__name__)
        self._stop = threading.Event()
        # Returns True when the wait was interrupted by a stop request.
        self.wait_fn = wait_fn or self._stop.wait

    def on_add(self, obj: Any) -> None:
        self._handle("added", obj)

    def on_update(self, old_obj: Any, new_obj: Any) -> None:
        self._handle("updated", new_obj)

    def on_delete(self, obj: Any) -> None:
        METRICS.events_total.labels(event="deleted").inc()
        try:
            gs = GameServer.from_object(obj)
        except ValueError as exc:
            self.logger.warning("Ignoring deleted notification: %s", exc)
            return
        # Derived objects carry owner references; the garbage collector removes them.
        self.logger.info("%s", gs.key, extra={"event": "deleted"})

    def _handle(self, event: str, obj: Any) -> None:
        METRICS.events_total.labels(event=event).inc()
        try:
            gs = GameServer.from_object(obj)
        except ValueError as exc:
            self.logger.warning("Ignoring %s notification: %s", event, exc)
            return
        self.reconcile(event, gs)

    def reconcile(self, event: str, gs: GameServer) -> bool:
        """Apply the annotation policy and dispatch the pipeline.

        Returns True when a pipeline was submitted for *gs*.
        """
        reason = skip_reason(gs)
        if reason == SKIP_MISSING_ANNOTATION:
            self.logger.info(
                "skipping %s, annotation %s not present",
                gs.key,
                ANNOTATION_INGRESS_MODE,
                extra={"event": event},
            )
        elif reason == SKIP_SHUTDOWN:
            self.logger.info("%s", gs.key, extra={"event": "shutdown"})
        elif reason == SKIP_DISALLOWED_STATE:
            self.logger.info(
                "%s/%s not reconciled, requires Scheduled, RequestReady or Ready state",
                gs.key,
                gs.state,
                extra={"event": event},
            )

        if reason is not None:
            METRICS.skipped_total.labels(reason=reason).inc()
            return False

        METRICS.pipelines_dispatched_total.inc()
        self.dispatcher.submit(gs.key, functools.partial(self._run_pipeline, event, gs))
        return True

    def _run_pipeline(self, event: str, gs: GameServer) -> Deferred | None:
        started = time.monotonic()
        try:
            delay = self.reconcile_service(gs)
        except Exception:
            self._observe_pipeline("failure", started)
            raise
        if delay is None:
            self._finish_pipeline(event, gs, started)
            return None
        # The worker is released while the delay runs.
        self.logger.debug("Delaying ingress for %s by %.3fs", gs.key, delay)
        return Deferred(delay, functools.partial(self._finish_pipeline, event, gs, started))

    def _finish_pipeline(self, event: str, gs: GameServer, started: float) -> None:
        try:
            self.reconcile_ingress(event, gs)
        except Exception:
            self._observe_pipeline("failure", started)
            raise
        self._observe_pipeline("success", started)

    @staticmethod
    def _observe_pipeline(result: str, started: float) -> None:
        METRICS.pipeline_results_total.labels(result=result).inc()
        METRICS.pipeline_duration_seconds.observe(time.monotonic() - started)

    def _fail(self, step: str, gs: GameServer, message: str, exc: Exception) -> ReconcileError:
        METRICS.step_errors_total.labels(step=step).inc()
        if self.recorder is not None:
            self.recorder.warning(gs, "ReconcileFailed", f"{message}: {exc}")
        return ReconcileError(step, gs.key, f"{message}: {exc}")

    def reconcile_service(self, gs: GameServer) -> float | None:
        """Run the Service step and resolve the ingress delay.

        Returns the delay in seconds (never negative), or None when no delay
        is annotated.
        """
        try:
            self.service_reconciler.reconcile(gs)
        except Exception as exc:
            raise self._fail(
                STEP_SERVICE, gs, f"failed to reconcile service {gs.key}", exc
            ) from exc

        try:
            delay = gs.annotations.get_duration(ANNOTATION_INGRESS_DELAY)
        except DurationError as exc:
            raw = gs.annotations.get(ANNOTATION_INGRESS_DELAY)
            raise self._fail(
                STEP_DELAY,
                gs,
                f"failed to parse ingress delay duration {raw!r} for {gs.key}, example: '3000ms'",
                exc,
            ) from exc
        return None if delay is None else max(0.0, delay)

    def reconcile_ingress(self, event: str, gs: GameServer) -> ReconcileOutcome:
        """Run the Ingress and GameServer status steps; returns the status outcome."""
        try:
            ingress = self.ingress_reconciler.reconcile(gs)
        except Exception as exc:
            raise self._fail(
                STEP_INGRESS, gs, f"failed to reconcile ingress {gs.key}", exc
            ) from exc

        try:
            result = self.gameserver_reconciler.reconcile(gs)
        except Exception as exc:
            raise self._fail(
                STEP_GAMESERVER, gs, f"failed to reconcile gameserver {gs.key}", exc
            ) from exc

        if ingress.changed:
            METRICS.ingress_changes_total.inc()
            state = result.obj.state if isinstance(result.obj, GameServer) else gs.state
            self.logger.info(
                "%s/%s",
                gs.key,
                state,
                extra={"event": event, "reconciled": True, "ingress": "created"},
            )

        return result

    def reconcile_service_and_ingress(
        self, event: str, gs: GameServer
    ) -> ReconcileOutcome | None:
        """Run the whole pipeline for one snapshot on the calling thread.

        Returns the GameServer step outcome, or None when a stop request
        interrupted the ingress delay.  Raises :class:`ReconcileError`.
        Dispatched pipelines do not use this; they hand the delay to the
        dispatcher instead of sleeping on a worker.
        """
        delay = self.reconcile_service(gs)
        if delay is not None:
            self.logger.debug("Delaying ingress for %s by %.3fs", gs.key, delay)
            if self.wait_fn(delay):
                self.logger.info(
                    "Stop requested while delaying ingress for %s; abandoning", gs.key
                )
                return None
        return self.reconcile_ingress(event, gs)

    def request_stop(self) -> None:
        """Wake callers sleeping in :meth:`reconcile_service_and_ingress` so they can exit."""
        self._stop.set()

    def shutdown(self, wait: bool = True) -> None:
        self.request_stop()
        self.dispatcher.shutdown(wait=wait)


def build_event_handler(
    clients: KubeClients,
    config: ControllerConfig,
    logger: logging.Logger | None = None,
) -> GameServerEventHandler:
    """Wire reconcilers, event recorder and dispatcher into an event handler."""
    store = ObjectStore(
        core_api=clients.core,
        networking_api=clients.networking,
        custom_api=clients.custom,
    )
    recorder = EventRecorder(core_api=clients.core)
    dispatcher = KeyedDispatcher(
        max_workers=config.max_concurrent_reconciles,
        max_retries=config.max_retries,
        retry_base_seconds=config.retry_base_seconds,
        retry_max_seconds=config.retry_max_seconds,
        should_retry=is_retryable,
    )
    return GameServerEventHandler(
        service_reconciler=ServiceReconciler(store, recorder),
        ingress_reconciler=IngressReconciler(store, recorder),
        gameserver_reconciler=GameServerReconciler(store, recorder),
        dispatcher=dispatcher,
        recorder=recorder,
        logger=logger,
    )
