from __future__ import annotations

import requests

from omnisync.core.errors import ExternalServiceError, RemoteWriteError, TransientExternalError
from omnisync.domain.sync_models import RemoteResult

_TRANSIENT_STATUS_CODES = frozenset({408, 425, 429, 500, 502, 503, 504})


def extract_error_text(response: requests.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return (response.text or "").strip()
    if isinstance(payload, dict):
        parts = [str(payload[key]) for key in ("message", "details", "hint") if payload.get(key)]
        if parts:
            return " | ".join(parts)
    return (response.text or "").strip()


def classify_status(status_code: int, text: str = "") -> tuple[str, bool]:
    """Mensaje legible y si merece reintento automático."""

    text_lower = text.strip().lower()
    if status_code in _TRANSIENT_STATUS_CODES:
        if status_code == 429:
            return "Límite de peticiones de Supabase alcanzado; se reintentará.", True
        return f"Supabase no disponible temporalmente ({status_code}).", True
    if status_code in (401, 403) or "jwt" in text_lower or "permission denied" in text_lower:
        return "Credenciales de Supabase rechazadas. Revisa la API key y las políticas RLS.", False
    if status_code == 404:
        return "Tabla o recurso inexistente en Supabase.", False
    if status_code == 409 or "duplicate key" in text_lower:
        return f"Conflicto de clave en Supabase: {text or status_code}", False
    if 400 <= status_code < 500:
        return f"Supabase rechazó la petición ({status_code}): {text or 'sin detalle'}", False
    return f"Respuesta inesperada de Supabase ({status_code}): {text or 'sin detalle'}", True


def error_from_response(response: requests.Response) -> ExternalServiceError:
    message, transient = classify_status(response.status_code, extract_error_text(response))
    error_type = TransientExternalError if transient else RemoteWriteError
    return error_type(message, status_code=response.status_code)


def error_from_exception(exc: Exception) -> ExternalServiceError:
    if isinstance(exc, ExternalServiceError):
        return exc
    if isinstance(exc, requests.Timeout):
        return TransientExternalError("Supabase no respondió a tiempo.")
    if isinstance(exc, requests.ConnectionError):
        return TransientExternalError("Sin conexión con Supabase.")
    if isinstance(exc, requests.RequestException):
        return TransientExternalError(f"Error de red con Supabase: {exc}")
    if isinstance(exc, ValueError):
        return ExternalServiceError(f"Respuesta de Supabase ilegible: {exc}")
    return ExternalServiceError(f"{type(exc).__name__}: {exc}")


def result_from_error(error: ExternalServiceError) -> RemoteResult:
    return RemoteResult.fail(str(error), status_code=error.status_code, transient=error.transient)


def result_from_response(response: requests.Response) -> RemoteResult:
    return result_from_error(error_from_response(response))


def result_from_exception(exc: Exception) -> RemoteResult:
    return result_from_error(error_from_exception(exc))
