import hmac
from .utils import read_secret

def load_api_key(api_key_file: str) -> str:
    k = read_secret(api_key_file)
    if len(k) < 16:
        raise RuntimeError(f"{api_key_file} too short; use 32+ chars")
    return k

def secret_ok(got: str, expected: str) -> bool:
    # constant-time compare; an unset expected secret never matches
    if not expected:
        return False
    return hmac.compare_digest(got or "", expected)
