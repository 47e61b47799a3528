"""Server lifecycle: startup, serving, signal-driven drain, stop.

uvicorn does the socket work: it accepts connections concurrently (one task
per request), installs SIGINT/SIGTERM handlers, stops accepting on signal,
waits up to ``timeout_graceful_shutdown`` for in-flight requests and then
cancels whatever is left. ``ManagedServer`` hooks those phases so the process
has an observable state machine:

    starting -> serving -> draining -> stopped
        \\___________\\__________\\-> failed

A bind failure or an unexpected server error is fatal: it is logged and the
process exits with status 1. A drain that runs into the grace period is
logged and not retried.
"""

from __future__ import annotations

import contextlib
import logging
import signal
import socket
import threading
import time
from enum import Enum
from types import FrameType
from typing import Iterator

import uvicorn
from starlette.types import ASGIApp

from ipecho.core.config import ServerSettings

logger = logging.getLogger(__name__)

_SHUTDOWN_SIGNALS = (signal.SIGINT, signal.SIGTERM)


class LifecycleState(str, Enum):
    STARTING = "starting"
    SERVING = "serving"
    DRAINING = "draining"
    STOPPED = "stopped"
    FAILED = "failed"


_TRANSITIONS: dict[LifecycleState, set[LifecycleState]] = {
    LifecycleState.STARTING: {
        LifecycleState.SERVING,
        LifecycleState.DRAINING,
        LifecycleState.STOPPED,
        LifecycleState.FAILED,
    },
    LifecycleState.SERVING: {LifecycleState.DRAINING, LifecycleState.FAILED},
    LifecycleState.DRAINING: {LifecycleState.STOPPED, LifecycleState.FAILED},
    LifecycleState.STOPPED: set(),
    LifecycleState.FAILED: set(),
}


class ServerLifecycle:
    """Thread-safe holder of the process-wide server state."""

    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._state = LifecycleState.STARTING
        self._signal: int | None = None

    @property
    def state(self) -> LifecycleState:
        with self._cond:
            return self._state

    @property
    def shutdown_signal(self) -> int | None:
        """Signal that started the drain, if any."""
        with self._cond:
            return self._signal

    def _transition(self, target: LifecycleState) -> bool:
        with self._cond:
            if target not in _TRANSITIONS[self._state]:
                logger.debug(
                    "server.transition_ignored",
                    extra={"from_state": self._state.value, "to_state": target.value},
                )
                return False
            self._state = target
            self._cond.notify_all()
            return True

    def mark_serving(self) -> bool:
        return self._transition(LifecycleState.SERVING)

    def begin_draining(self, sig: int | None = None) -> bool:
        with self._cond:
            if self._signal is None and sig is not None:
                self._signal = sig
        return self._transition(LifecycleState.DRAINING)

    def mark_stopped(self) -> bool:
        if self.state in (LifecycleState.STARTING, LifecycleState.SERVING):
            self._transition(LifecycleState.DRAINING)
        return self._transition(LifecycleState.STOPPED)

    def mark_failed(self) -> bool:
        return self._transition(LifecycleState.FAILED)

    def wait_for(self, state: LifecycleState, timeout: float | None = None) -> bool:
        """Block until ``state`` is reached; False on timeout."""
        with self._cond:
            return self._cond.wait_for(lambda: self._state is state, timeout=timeout)


class ManagedServer(uvicorn.Server):
    """uvicorn server that reports its phases to a ServerLifecycle."""

    def __init__(self, config: uvicorn.Config, lifecycle: ServerLifecycle | None = None) -> None:
        super().__init__(config)
        self.lifecycle = lifecycle or ServerLifecycle()

    async def startup(self, sockets: list[socket.socket] | None = None) -> None:
        await super().startup(sockets=sockets)
        if self.started and not self.should_exit:
            self.lifecycle.mark_serving()
            logger.info(
                "server.serving",
                extra={"host": self.config.host, "port": self.config.port},
            )

    def handle_exit(self, sig: int, frame: FrameType | None) -> None:
        if self.lifecycle.begin_draining(sig):
            logger.info(
                "server.draining",
                extra={
                    "signal": signal.Signals(sig).name if sig else None,
                    "grace_s": self.config.timeout_graceful_shutdown,
                },
            )
        super().handle_exit(sig, frame)

    async def shutdown(self, sockets: list[socket.socket] | None = None) -> None:
        self.lifecycle.begin_draining()
        in_flight = len(self.server_state.tasks)
        grace = self.config.timeout_graceful_shutdown
        start = time.monotonic()

        await super().shutdown(sockets=sockets)

        elapsed = time.monotonic() - start
        if grace is not None and in_flight and elapsed >= grace:
            logger.warning(
                "server.drain_timeout",
                extra={"in_flight": in_flight, "grace_s": grace, "elapsed_s": round(elapsed, 3)},
            )
        self.lifecycle.mark_stopped()


def build_config(app: ASGIApp, server_settings: ServerSettings) -> uvicorn.Config:
    """Build the uvicorn config for the service.

    Proxy header handling is off in uvicorn because the pipeline resolves the
    client address itself; ``scope["client"]`` must stay the transport peer.
    """
    return uvicorn.Config(
        app,
        host=server_settings.host,
        port=server_settings.port,
        timeout_keep_alive=server_settings.keep_alive_seconds,
        timeout_graceful_shutdown=server_settings.shutdown_grace_seconds,
        proxy_headers=False,
        server_header=False,
        access_log=False,
        log_config=None,
    )


def _ignore_replayed_signal(sig: int, frame: FrameType | None) -> None:
    logger.debug("server.signal_replay_ignored", extra={"signal": signal.Signals(sig).name})


@contextlib.contextmanager
def _absorb_replayed_signals() -> Iterator[None]:
    """Keep uvicorn's post-drain signal replay from killing the process.

    After a drain uvicorn restores the previous handlers and re-raises the
    signal it caught. With the default handlers that is a KeyboardInterrupt
    for SIGINT and an immediate kill for SIGTERM, so run() would never log
    the stop or return. The drain has already handled the signal.
    """
    if threading.current_thread() is not threading.main_thread():
        yield
        return

    previous = {sig: signal.signal(sig, _ignore_replayed_signal) for sig in _SHUTDOWN_SIGNALS}
    try:
        yield
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)


def run(
    app: ASGIApp,
    server_settings: ServerSettings,
    *,
    lifecycle: ServerLifecycle | None = None,
) -> ServerLifecycle:
    """Serve ``app`` until a termination signal completes the drain.

    Raises:
        SystemExit: With status 1 when the listener cannot start or the
            server fails unexpectedly.
    """
    server = ManagedServer(build_config(app, server_settings), lifecycle)
    lifecycle = server.lifecycle
    logger.info(
        "server.starting",
        extra={"host": server_settings.host, "port": server_settings.port},
    )

    try:
        with _absorb_replayed_signals():
            server.run()
    except SystemExit as exc:
        # uvicorn calls sys.exit(1) when the socket cannot be bound.
        lifecycle.mark_failed()
        logger.critical(
            "server.startup_failed",
            extra={"host": server_settings.host, "port": server_settings.port, "exit_code": exc.code},
        )
        raise SystemExit(1) from exc
    except Exception as exc:
        lifecycle.mark_failed()
        logger.critical("server.crashed", exc_info=True)
        raise SystemExit(1) from exc

    if not server.started and lifecycle.shutdown_signal is None:
        lifecycle.mark_failed()
        logger.critical(
            "server.startup_failed",
            extra={"host": server_settings.host, "port": server_settings.port},
        )
        raise SystemExit(1)

    lifecycle.mark_stopped()
    logger.info("server.stopped", extra={"state": lifecycle.state.value})
    return lifecycle
