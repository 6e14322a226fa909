"""Hooks that turn runtime failures into raw payloads.

One CaptureRegistry owns every process-wide hook. ``install()`` swaps in
its handlers once; ``uninstall()`` puts the previous ones back. Payloads
go to registered callbacks in registration order, then the previously
installed platform handler runs.
"""

import functools
import json
import os
import signal
import sys
import threading
import traceback
from typing import Callable

from error_pipeline.diagnostics import get_internal_logger
from error_pipeline.durable_queue import atomic_write_json
from error_pipeline.models import Severity, Source, new_id

internal = get_internal_logger()


def _format_frames(frames) -> list[str]:
    # innermost frame first, so fingerprints key on where the failure happened
    return [f"{fs.filename}:{fs.lineno} in {fs.name}" for fs in reversed(frames)]


def payload_from_exception(
    exc: BaseException,
    source: Source,
    severity: Severity | None = None,
    context: dict | None = None,
    tb=None,
) -> dict:
    tb = tb if tb is not None else exc.__traceback__
    text = str(exc)
    name = type(exc).__name__
    return {
        "source": source,
        "severity": severity,
        "message": f"{name}: {text}" if text else name,
        "error_type": type(exc).__qualname__,
        "stack_trace": _format_frames(traceback.extract_tb(tb)) if tb else [],
        "context": dict(context or {}),
    }


def payload_from_signal(signum: int, frame) -> dict:
    try:
        name = signal.Signals(signum).name
    except ValueError:
        name = str(signum)
    return {
        "source": Source.NATIVE_SIGNAL,
        "severity": Severity.FATAL,
        "message": f"Received signal {name}",
        "error_type": name,
        "stack_trace": _format_frames(traceback.extract_stack(frame)) if frame else [],
        "context": {"signal": signum},
    }


class CaptureRegistry:
    def __init__(self):
        self._handlers: list[tuple[Callable, Callable | None]] = []
        self._installed = False
        self._previous_excepthook = None
        self._previous_thread_hook = None
        self._previous_signals: dict[int, object] = {}
        self._loop = None
        self._previous_loop_handler = None

    @property
    def installed(self) -> bool:
        return self._installed

    def add_handler(self, callback: Callable, deferred: Callable | None = None):
        """Register a payload callback.

        ``deferred`` is the variant used from signal handlers; it must not
        take locks. Falls back to ``callback`` when not given.
        """
        self._handlers.append((callback, deferred))

    def remove_handler(self, callback: Callable):
        # bound methods compare equal, never identical
        self._handlers = [h for h in self._handlers if h[0] != callback]

    def dispatch(self, payload: dict, deferred: bool = False):
        for callback, deferred_callback in list(self._handlers):
            target = deferred_callback if deferred and deferred_callback else callback
            try:
                target(payload)
            except Exception:
                internal.exception("Capture callback %r failed", target)

    # ------------------------------------------------------------------
    # Install / teardown
    # ------------------------------------------------------------------

    def install(self, signals=(), loop=None):
        if self._installed:
            raise RuntimeError("capture hooks are already installed")
        self._previous_excepthook = sys.excepthook
        sys.excepthook = self._excepthook
        self._previous_thread_hook = threading.excepthook
        threading.excepthook = self._thread_excepthook
        if loop is not None:
            self._loop = loop
            self._previous_loop_handler = loop.get_exception_handler()
            loop.set_exception_handler(self._loop_exception_handler)
        for signum in signals:
            self._previous_signals[signum] = signal.signal(signum, self._signal_handler)
        self._installed = True

    def uninstall(self):
        if not self._installed:
            return
        sys.excepthook = self._previous_excepthook
        threading.excepthook = self._previous_thread_hook
        if self._loop is not None:
            self._loop.set_exception_handler(self._previous_loop_handler)
            self._loop = None
        for signum, previous in self._previous_signals.items():
            signal.signal(signum, previous)
        self._previous_signals.clear()
        self._installed = False

    # ------------------------------------------------------------------
    # Hooks
    # ------------------------------------------------------------------

    def _excepthook(self, exc_type, exc, tb):
        if not issubclass(exc_type, KeyboardInterrupt):
            self.dispatch(
                payload_from_exception(exc, Source.SCRIPT_GLOBAL, Severity.FATAL, tb=tb)
            )
        self._previous_excepthook(exc_type, exc, tb)

    def _thread_excepthook(self, args):
        if args.exc_type is not SystemExit and args.exc_value is not None:
            thread_name = args.thread.name if args.thread is not None else ""
            self.dispatch(
                payload_from_exception(
                    args.exc_value,
                    Source.SCRIPT_GLOBAL,
                    Severity.RECOVERABLE,
                    {"thread": thread_name},
                    tb=args.exc_traceback,
                )
            )
        self._previous_thread_hook(args)

    def _loop_exception_handler(self, loop, context):
        exc = context.get("exception")
        extra = {"asyncio_message": str(context.get("message", ""))}
        if exc is not None:
            payload = payload_from_exception(exc, Source.REJECTED_ASYNC, context=extra)
        else:
            payload = {
                "source": Source.REJECTED_ASYNC,
                "message": str(context.get("message") or "unhandled asyncio error"),
                "context": extra,
            }
        self.dispatch(payload)
        if self._previous_loop_handler is not None:
            self._previous_loop_handler(loop, context)
        else:
            loop.default_exception_handler(context)

    def _signal_handler(self, signum, frame):
        self.dispatch(payload_from_signal(signum, frame), deferred=True)
        previous = self._previous_signals.get(signum)
        if callable(previous):
            previous(signum, frame)
        elif previous == signal.SIG_DFL:
            signal.signal(signum, signal.SIG_DFL)
            signal.raise_signal(signum)


registry = CaptureRegistry()


class ErrorBoundary:
    """Reports exceptions raised in the block as boundary failures and suppresses them.

    ``fallback`` is called with the exception, standing in for the
    fallback UI a component boundary would render.
    """

    def __init__(self, component: str, fallback: Callable | None = None,
                 context: dict | None = None, capture_registry: CaptureRegistry | None = None):
        self._component = component
        self._fallback = fallback
        self._context = dict(context or {})
        self._registry = capture_registry or registry
        self.error: BaseException | None = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        if exc is None or not isinstance(exc, Exception):
            return False
        self.error = exc
        context = {"component": self._component, **self._context}
        self._registry.dispatch(
            payload_from_exception(exc, Source.SCRIPT_BOUNDARY, Severity.RECOVERABLE, context, tb)
        )
        if self._fallback is not None:
            self._fallback(exc)
        return True


def bridge_call(module: str, method: str | None = None,
                capture_registry: CaptureRegistry | None = None):
    """Decorator for calls across the native bridge: report failures, then re-raise."""

    def decorator(func):
        name = method or func.__name__

        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            try:
                return func(*args, **kwargs)
            except Exception as exc:
                (capture_registry or registry).dispatch(
                    payload_from_exception(
                        exc, Source.BRIDGE_CALL, context={"module": module, "method": name}
                    )
                )
                raise

        return wrapper

    return decorator


def write_crash_report(directory: str, payload: dict) -> str:
    """Persist a raw crash payload for pickup on next start."""
    os.makedirs(directory, exist_ok=True)
    data = dict(payload)
    for key in ("source", "severity"):
        if hasattr(data.get(key), "value"):
            data[key] = data[key].value
    filename = f"{new_id()}.json"
    atomic_write_json(directory, filename, data)
    return os.path.join(directory, filename)


def import_crash_reports(directory: str, sink: Callable[[dict], object]) -> int:
    """Feed crash payloads left by a previous run into ``sink``.

    Files are removed once the sink accepts them (returns non-None);
    unreadable or rejected files are renamed with a ``.bad`` suffix.
    """
    if not os.path.isdir(directory):
        return 0
    imported = 0
    for name in sorted(os.listdir(directory)):
        if not name.endswith(".json"):
            continue
        path = os.path.join(directory, name)
        try:
            with open(path, "r", encoding="utf-8") as f:
                payload = json.load(f)
        except (OSError, ValueError) as exc:
            internal.error("Unreadable crash report %s: %s", path, exc)
            os.replace(path, path + ".bad")
            continue
        if isinstance(payload, dict):
            payload.setdefault("source", Source.NATIVE_EXCEPTION.value)
        if sink(payload) is None:
            os.replace(path, path + ".bad")
            continue
        os.unlink(path)
        imported += 1
    return imported
