# error_handler.py - Error kinds, logging and result-value execution for group sessions
import logging
import traceback
from enum import Enum
from typing import Optional, Dict, Any

class ErrorCode(Enum):
    # Cryptographic errors
    INITIALIZATION_FAILED = "CRY_001"
    ENCRYPTION_FAILED = "CRY_002"
    SIGNATURE_FAILED = "CRY_003"

    # Message errors
    INPUT_TOO_LARGE = "MSG_001"
    SESSION_KEY_INVALID = "MSG_002"

    # Session errors
    SESSION_EXHAUSTED = "SES_001"
    USE_AFTER_RELEASE = "SES_002"
    RATCHET_REWIND = "SES_003"

    # State (pickle) errors
    INVALID_PASSPHRASE = "STA_001"
    PICKLE_AUTHENTICATION_FAILED = "STA_002"
    PICKLE_FORMAT_INVALID = "STA_003"
    STATE_SERIALIZATION_FAILED = "STA_004"

    # General errors
    INVALID_PARAMETER = "GEN_001"

class GroupRatchetError(Exception):
    """Base exception for outbound group session operations"""
    def __init__(self, error_code: ErrorCode, message: str, details: Optional[Dict[str, Any]] = None):
        self.error_code = error_code
        self.message = message
        self.details = details or {}
        super().__init__(f"{error_code.value}: {message}")

class CryptographicError(GroupRatchetError):
    """Errors related to cryptographic operations"""
    pass

class MessageError(GroupRatchetError):
    """Errors related to message or export input"""
    pass

class SessionError(GroupRatchetError):
    """Errors related to the session lifecycle and ratchet position"""
    pass

class StateError(GroupRatchetError):
    """Errors related to pickling and unpickling session state"""
    pass

class InitializationFailure(CryptographicError):
    """Random source or key generation unavailable; not retryable"""
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(ErrorCode.INITIALIZATION_FAILED, message, details)

class EncryptionInputTooLarge(MessageError):
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(ErrorCode.INPUT_TOO_LARGE, message, details)

class SessionKeyFormatError(MessageError):
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(ErrorCode.SESSION_KEY_INVALID, message, details)

class SessionExhausted(SessionError):
    """Message index reached its maximum; a new session is required"""
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(ErrorCode.SESSION_EXHAUSTED, message, details)

class UseAfterRelease(SessionError):
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(ErrorCode.USE_AFTER_RELEASE, message, details)

class InvalidPassphrase(StateError):
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(ErrorCode.INVALID_PASSPHRASE, message, details)

class UnpickleAuthenticationFailure(StateError):
    """MAC mismatch: wrong passphrase or corrupted blob"""
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(ErrorCode.PICKLE_AUTHENTICATION_FAILED, message, details)

class UnpickleFormatError(StateError):
    """Unknown version or corrupt layout"""
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(ErrorCode.PICKLE_FORMAT_INVALID, message, details)

class ErrorHandler:
    """Centralized error handling for the binding layer"""

    def __init__(self, enable_logging=True):
        self.enable_logging = enable_logging
        self.error_stats = {}
        self.logger = logging.getLogger('GroupRatchet')

        if enable_logging:
            logging.basicConfig(
                level=logging.INFO,
                format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
            )

    def handle_error(self, error: Exception, context: str = "",
                    recovery_action: Optional[str] = None) -> Dict[str, Any]:
        """
        Handle and log errors, return error information
        """
        error_info = {
            'context': context,
            'error_type': type(error).__name__,
            'error_message': str(error),
            'recovery_action': recovery_action,
            'traceback': traceback.format_exc() if self.enable_logging else None
        }

        if isinstance(error, GroupRatchetError):
            error_info['error_code'] = error.error_code.value
            error_info['details'] = error.details

        error_type = type(error).__name__
        if error_type not in self.error_stats:
            self.error_stats[error_type] = 0
        self.error_stats[error_type] += 1

        if self.enable_logging:
            log_message = f"Error in {context}: {error_info['error_message']}"
            if recovery_action:
                log_message += f" | Recovery: {recovery_action}"
            self.logger.error(log_message)

            if isinstance(error, GroupRatchetError) and error.details:
                self.logger.error(f"Error details: {error.details}")

        return error_info

    def safe_execute(self, operation, *args, **kwargs):
        """
        Safely execute an operation with error handling
        Returns (success: bool, result: Any, error_info: Dict)
        """
        try:
            result = operation(*args, **kwargs)
            return True, result, None
        except Exception as e:
            error_info = self.handle_error(
                e,
                context=getattr(operation, '__name__', repr(operation)),
                recovery_action=self.create_recovery_suggestion(e)
            )
            return False, None, error_info

    def validate_parameter(self, param_name: str, param_value: Any,
                          expected_type: Optional[type] = None,
                          min_length: Optional[int] = None,
                          max_length: Optional[int] = None) -> None:
        """
        Validate parameters and raise GroupRatchetError if invalid
        """
        if param_value is None:
            raise GroupRatchetError(
                ErrorCode.INVALID_PARAMETER,
                f"Parameter {param_name} cannot be None"
            )

        if expected_type and not isinstance(param_value, expected_type):
            expected_name = getattr(expected_type, '__name__', None) or " or ".join(t.__name__ for t in expected_type)
            raise GroupRatchetError(
                ErrorCode.INVALID_PARAMETER,
                f"Parameter {param_name} must be of type {expected_name}, got {type(param_value).__name__}"
            )

        if min_length is not None and len(param_value) < min_length:
            raise GroupRatchetError(
                ErrorCode.INVALID_PARAMETER,
                f"Parameter {param_name} must have minimum length {min_length}, got {len(param_value)}"
            )

        if max_length is not None and len(param_value) > max_length:
            raise GroupRatchetError(
                ErrorCode.INVALID_PARAMETER,
                f"Parameter {param_name} must have maximum length {max_length}, got {len(param_value)}"
            )

    def create_recovery_suggestion(self, error: Exception) -> str:
        """
        Provide recovery suggestions based on error type
        """
        if isinstance(error, SessionExhausted):
            return "Create a new outbound session and share its session key"
        elif isinstance(error, UseAfterRelease):
            return "Session was released; unpickle or create a new one"
        elif isinstance(error, UnpickleAuthenticationFailure):
            return "Check the passphrase; the pickle may also be corrupted"
        elif isinstance(error, UnpickleFormatError):
            return "Pickle was produced by an incompatible version or is truncated"
        elif isinstance(error, InvalidPassphrase):
            return "Supply a non-empty passphrase"
        elif isinstance(error, EncryptionInputTooLarge):
            return "Split the plaintext into smaller messages"
        elif isinstance(error, InitializationFailure):
            return "Secure random source unavailable; do not retry"

        return "Consider creating a new session"

    def get_error_statistics(self) -> Dict[str, Any]:
        """
        Get error statistics for monitoring and debugging
        """
        total_errors = sum(self.error_stats.values())
        return {
            'total_errors': total_errors,
            'error_counts': self.error_stats.copy(),
            'error_rates': {
                error_type: count / total_errors * 100
                for error_type, count in self.error_stats.items()
            } if total_errors > 0 else {}
        }

    def reset_statistics(self):
        """Reset error statistics"""
        self.error_stats.clear()

# Convenience functions for common error scenarios
def create_crypto_error(error_code: ErrorCode, message: str, details: Optional[Dict] = None) -> CryptographicError:
    return CryptographicError(error_code, message, details)

def create_message_error(error_code: ErrorCode, message: str, details: Optional[Dict] = None) -> MessageError:
    return MessageError(error_code, message, details)

def create_session_error(error_code: ErrorCode, message: str, details: Optional[Dict] = None) -> SessionError:
    return SessionError(error_code, message, details)

def create_state_error(error_code: ErrorCode, message: str, details: Optional[Dict] = None) -> StateError:
    return StateError(error_code, message, details)
