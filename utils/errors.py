"""
Dispatch Errors
Exception taxonomy shared by the device and client APIs
"""
from typing import Any, Dict, List, Optional


class DispatchError(Exception):
    """Base error rendered as a JSON response by the API blueprints"""
    status_code = 500
    error = 'internal_error'

    def __init__(self, message: Optional[str] = None, details: Optional[List[Any]] = None,
                 error: Optional[str] = None):
        super().__init__(message or self.error)
        self.message = message or self.error
        self.details = details
        if error:
            self.error = error

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {'error': self.error, 'message': self.message}
        if self.details is not None:
            body['details'] = self.details
        return body


class AuthenticationFailure(DispatchError):
    """Bad or missing device secret or user token"""
    status_code = 401
    error = 'unauthorized'


class NotFound(DispatchError):
    """Unknown device, command or compartment"""
    status_code = 404
    error = 'not_found'


class ValidationFailure(DispatchError):
    """Malformed request input"""
    status_code = 400
    error = 'invalid_input'


class StateConflict(DispatchError):
    """Command exists but is not in a state that allows the transition"""
    status_code = 409
    error = 'state_conflict'


class DeliveryFailure(DispatchError):
    """A single push endpoint was unreachable or rejected the message"""
    status_code = 502
    error = 'delivery_failed'

    def __init__(self, message: Optional[str] = None, status: Optional[int] = None):
        super().__init__(message)
        self.status = status

    @property
    def is_gone(self) -> bool:
        """Endpoint reported as permanently gone"""
        return self.status in (404, 410)


class ConfigurationError(DispatchError):
    """Server-side configuration missing"""
    status_code = 500
    error = 'configuration_error'
