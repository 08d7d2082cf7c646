from __future__ import annotations


class AppError(Exception):
    pass


class InfraError(AppError):
    pass


class PersistenceError(InfraError):
    """Fallo del almacenamiento local (cuota, fichero corrupto, SQLite bloqueado)."""


class ConfigurationError(InfraError):
    pass


class ExternalServiceError(InfraError):
    """Fallo hablando con Supabase; ``transient`` indica si merece reintento automático."""

    transient = False

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class TransientExternalError(ExternalServiceError):
    transient = True


class RemoteWriteError(ExternalServiceError):
    """El almacén remoto rechazó la petición (validación, permisos, conflicto de clave)."""
