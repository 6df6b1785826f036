# encoding.py - base64url helpers shared by the wire formats
import base64
import binascii


def b64u_encode(val: bytes) -> str:
    return base64.urlsafe_b64encode(val).decode('ascii').rstrip('=')


def b64u_decode(val: str) -> bytes:
    """Decode base64url with or without padding. Raises ValueError on bad input."""
    if not isinstance(val, str):
        raise ValueError(f"expected base64url string, got {type(val).__name__}")
    padded = val.replace('-', '+').replace('_', '/') + '=' * (-len(val) % 4)
    try:
        return base64.b64decode(padded.encode('ascii'), validate=True)
    except (binascii.Error, UnicodeEncodeError) as e:
        raise ValueError(f"invalid base64url: {e}")
