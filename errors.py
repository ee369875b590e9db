"""Errores de dominio y emisor de eventos de error.

Las operaciones de escritura nunca dejan un error sin manejar: las rutas los
convierten en respuestas HTTP (ver ``main.py``) y los errores de permisos se
reemiten además en ``error_emitter`` para que un listener de desarrollo pueda
mostrar el contexto completo de la petición denegada.
"""
import json
import logging
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


class DomainError(Exception):
    """Base de todos los errores de la agencia."""


class FieldValidationError(DomainError, ValueError):
    """Error de validación a nivel de campo, detectado antes de cualquier escritura."""

    def __init__(self, field: str, message: str):
        super().__init__(message)
        self.field = field
        self.message = message


class PaymentExceedsRemainingError(FieldValidationError):
    def __init__(self, remaining: float):
        self.remaining = round(remaining, 2)
        super().__init__(
            "amount",
            f"Le montant dépasse le reste à payer : {self.remaining:.2f}.",
        )


class RecordNotFoundError(DomainError):
    """Un contrato o vehículo referenciado no existe (aborta la transacción)."""

    def __init__(self, entity: str, record_id: Any):
        self.entity = entity
        self.record_id = record_id
        super().__init__(f"{entity} introuvable ({record_id}).")


class StateConflictError(DomainError):
    """La operación no está permitida en el estado actual del registro."""


class ExternalServiceError(DomainError):
    """El servicio externo (IA) no respondió o devolvió una respuesta inválida."""


class PermissionDeniedError(DomainError):
    def __init__(self, path: str, operation: str, request_resource_data: Optional[dict] = None):
        self.context = {
            "path": path,
            "operation": operation,
            "request_resource_data": request_resource_data,
        }
        super().__init__(
            "Missing or insufficient permissions. The following request was denied:\n"
            + json.dumps(self.context, indent=2, default=str)
        )


Listener = Callable[[Any], None]


class EventEmitter:
    def __init__(self):
        self._listeners: Dict[str, List[Listener]] = {}

    def on(self, event: str, listener: Listener):
        self._listeners.setdefault(event, []).append(listener)

    def off(self, event: str, listener: Listener):
        if event not in self._listeners:
            return
        self._listeners[event] = [l for l in self._listeners[event] if l is not listener]

    def emit(self, event: str, data: Any):
        for listener in list(self._listeners.get(event, [])):
            listener(data)


error_emitter = EventEmitter()


def log_permission_error(error: PermissionDeniedError):
    """Listener de desarrollo: vuelca el contexto completo de la denegación."""
    logger.error("Permission denied: %s", json.dumps(error.context, default=str))