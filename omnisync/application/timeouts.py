from __future__ import annotations

import contextvars
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FuturesTimeoutError
from typing import Callable, TypeVar

T = TypeVar("T")


class RemoteCallTimeout(TimeoutError):
    pass


def call_with_timeout(operation: Callable[[], T], timeout_seconds: float | None, *, label: str = "remote") -> T:
    """Ejecuta ``operation`` con un límite de tiempo; un timeout equivale a un fallo de red.

    El hilo auxiliar no se espera al expirar: la llamada colgada termina sola y
    su resultado se descarta.
    """

    if timeout_seconds is None or timeout_seconds <= 0:
        return operation()
    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="omnisync-remote")
    future = executor.submit(contextvars.copy_context().run, operation)
    try:
        return future.result(timeout=timeout_seconds)
    except FuturesTimeoutError as exc:
        future.cancel()
        raise RemoteCallTimeout(f"Timeout en '{label}' tras {timeout_seconds:g} segundos") from exc
    finally:
        executor.shutdown(wait=False)
