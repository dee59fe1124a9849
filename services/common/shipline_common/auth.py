import hmac
from .utils import read_secret

MIN_KEY_LENGTH = 16

def load_api_key(api_key_file: str) -> str:
    k = read_secret(api_key_file)
    if len(k) < MIN_KEY_LENGTH:
        raise RuntimeError(f"api_key_too_short path={api_key_file}; use 32+ chars")
    return k

def api_key_ok(got: str, expected: str) -> bool:
    # constant-time compare; an unset expected key never matches
    if not expected:
        return False
    return hmac.compare_digest(got or "", expected)
