# error_handler.py - Error codes, exception hierarchy and central error handling
import logging
import traceback
from enum import Enum
from typing import Optional, Dict, Any


class ErrorCode(Enum):
    # Cryptographic errors
    DECRYPTION_FAILED = "DEC_001"
    MAC_VERIFICATION_FAILED = "MAC_001"
    SIGNATURE_INVALID = "SIG_001"
    DH_EXCHANGE_FAILED = "DHE_001"
    KEY_INVALID = "KEY_001"
    KEY_AGREEMENT_MISMATCH = "KEY_002"

    # Message errors
    HEADER_INVALID = "MSG_001"
    MESSAGE_ALREADY_CONSUMED = "MSG_002"
    MESSAGE_TOO_FAR_AHEAD = "MSG_005"
    ENVELOPE_INVALID = "MSG_006"

    # State errors
    STATE_CORRUPTION = "STA_001"
    STATE_SERIALIZATION_FAILED = "STA_002"
    STATE_DESERIALIZATION_FAILED = "STA_003"
    PRECONDITION_VIOLATED = "STA_004"

    # Profile / directory errors
    PROFILE_INVALID = "PRF_001"
    PROFILE_NOT_FOUND = "PRF_002"

    # General errors
    INVALID_PARAMETER = "GEN_001"
    INTERNAL_ERROR = "GEN_003"


class WhisperError(Exception):
    """Base exception for every error raised by the whisper package"""
    default_code = ErrorCode.INTERNAL_ERROR

    def __init__(self, message: str, error_code: Optional[ErrorCode] = None,
                 details: Optional[Dict[str, Any]] = None):
        self.error_code = error_code or self.default_code
        self.message = message
        self.details = details or {}
        super().__init__(f"{self.error_code.value}: {message}")


class CryptographicError(WhisperError):
    """Errors related to cryptographic operations"""
    default_code = ErrorCode.DH_EXCHANGE_FAILED


class MessageError(WhisperError):
    """Errors related to message handling"""
    default_code = ErrorCode.HEADER_INVALID


class StateError(WhisperError):
    """Errors related to session state"""
    default_code = ErrorCode.STATE_CORRUPTION


class ProfileError(WhisperError):
    """Errors related to resolved identity profiles"""
    default_code = ErrorCode.PROFILE_INVALID


class InvalidParameterError(WhisperError):
    default_code = ErrorCode.INVALID_PARAMETER


class PreconditionViolation(StateError):
    """An operation was called in a state that does not allow it"""
    default_code = ErrorCode.PRECONDITION_VIOLATED


class StateCorruption(StateError):
    """Persisted session state is missing fields or has ill-typed values"""
    default_code = ErrorCode.STATE_CORRUPTION


class MalformedHeader(MessageError):
    """Header fields have the wrong type or length"""
    default_code = ErrorCode.HEADER_INVALID


class MalformedEnvelope(MessageError):
    default_code = ErrorCode.ENVELOPE_INVALID


class DuplicateMessage(MessageError):
    """The message key for this header was already consumed"""
    default_code = ErrorCode.MESSAGE_ALREADY_CONSUMED


class SkippedKeyLimitExceeded(MessageError):
    default_code = ErrorCode.MESSAGE_TOO_FAR_AHEAD


class AuthenticationFailure(CryptographicError):
    """MAC mismatch; always treated as a potential forgery"""
    default_code = ErrorCode.MAC_VERIFICATION_FAILED


class DecryptionFailure(CryptographicError):
    default_code = ErrorCode.DECRYPTION_FAILED


class KeyAgreementMismatch(CryptographicError):
    """Both parties did not arrive at the same root key"""
    default_code = ErrorCode.KEY_AGREEMENT_MISMATCH


class SignatureVerificationFailed(CryptographicError):
    default_code = ErrorCode.SIGNATURE_INVALID


class ErrorHandler:
    """Centralized error handling and recovery system"""

    def __init__(self, enable_logging=True, logger_name='whisper'):
        self.enable_logging = enable_logging
        self.error_stats: Dict[str, int] = {}
        self.logger = logging.getLogger(logger_name)

        if enable_logging:
            logging.basicConfig(
                level=logging.INFO,
                format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
            )

    def handle_error(self, error: Exception, context: str = "",
                     recovery_action: Optional[str] = None) -> Dict[str, Any]:
        """
        Record and log an error, return error information
        """
        error_info = {
            'context': context,
            'error_type': type(error).__name__,
            'error_message': str(error),
            'recovery_action': recovery_action or self.create_recovery_suggestion(error),
            'traceback': traceback.format_exc() if self.enable_logging else None
        }

        if isinstance(error, WhisperError):
            error_info['error_code'] = error.error_code.value
            error_info['details'] = error.details

        error_type = type(error).__name__
        self.error_stats[error_type] = self.error_stats.get(error_type, 0) + 1

        if self.enable_logging:
            log_message = f"Error in {context}: {error_info['error_message']}"
            if error_info['recovery_action']:
                log_message += f" | Recovery: {error_info['recovery_action']}"
            self.logger.error(log_message)

            if isinstance(error, WhisperError) and error.details:
                self.logger.error(f"Error details: {error.details}")

        return error_info

    def safe_execute(self, operation, *args, **kwargs):
        """
        Execute an operation, capturing any error
        Returns (success: bool, result: Any, error_info: Dict)
        """
        try:
            result = operation(*args, **kwargs)
            return True, result, None
        except Exception as e:
            error_info = self.handle_error(e, context=getattr(operation, '__name__', repr(operation)))
            return False, None, error_info

    def validate_parameter(self, param_name: str, param_value: Any,
                           expected_type: Optional[type] = None,
                           exact_length: Optional[int] = None,
                           min_value: Optional[int] = None) -> None:
        """
        Validate a parameter and raise InvalidParameterError if invalid
        """
        validate_parameter(param_name, param_value, expected_type, exact_length, min_value)

    def create_recovery_suggestion(self, error: Exception) -> str:
        """
        Provide recovery suggestions based on error type
        """
        if isinstance(error, AuthenticationFailure):
            return "Message may have been tampered with. Discard it and keep the session"
        if isinstance(error, DuplicateMessage):
            return "Ignore duplicate message and continue"
        if isinstance(error, SkippedKeyLimitExceeded):
            return "Ask the sender to resend; too many messages were lost"
        if isinstance(error, KeyAgreementMismatch):
            return "Delete the session and restart key agreement with fresh keys"
        if isinstance(error, SignatureVerificationFailed):
            return "Reject the envelope; the sender could not be authenticated"
        if isinstance(error, StateCorruption):
            return "Delete the stored session and re-establish it"
        if isinstance(error, PreconditionViolation):
            return "Receive a message from the peer before sending"
        if isinstance(error, MessageError):
            return "Discard the malformed message"

        return "Consider deleting the session and establishing a new one"

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


def validate_parameter(param_name: str, param_value: Any,
                       expected_type: Optional[type] = None,
                       exact_length: Optional[int] = None,
                       min_value: Optional[int] = None) -> None:
    if param_value is None:
        raise InvalidParameterError(f"Parameter {param_name} cannot be None")

    if expected_type and not isinstance(param_value, expected_type):
        raise InvalidParameterError(
            f"Parameter {param_name} must be of type {expected_type.__name__}, "
            f"got {type(param_value).__name__}"
        )

    if exact_length is not None and len(param_value) != exact_length:
        raise InvalidParameterError(
            f"Parameter {param_name} must be {exact_length} bytes, got {len(param_value)}"
        )

    if min_value is not None and param_value < min_value:
        raise InvalidParameterError(
            f"Parameter {param_name} must be >= {min_value}, got {param_value}"
        )
