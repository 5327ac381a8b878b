
import base64, hashlib, hmac, json, secrets
from datetime import datetime, timezone
from itsdangerous import BadSignature, URLSafeSerializer
from .config import SECRET_KEY

DATA_URL_PNG_PREFIX = "data:image/png;base64,"


def utcnow() -> datetime:
    # naive UTC, matching what the database hands back
    return datetime.now(timezone.utc).replace(tzinfo=None)

def b64png_to_bytes(data_url: str) -> bytes:
    # expects "data:image/png;base64,....."
    if "," in data_url:
        data_url = data_url.split(",", 1)[1]
    return base64.b64decode(data_url)

def sha256_bytes(b: bytes) -> str:
    return hashlib.sha256(b).hexdigest()

def canonical_json(obj) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), default=str)

def generate_code(length: int) -> str:
    return "".join(secrets.choice("0123456789") for _ in range(length))

def codes_match(submitted: str, stored: str) -> bool:
    return hmac.compare_digest(submitted.encode(), stored.encode())

def new_session_token() -> str:
    return secrets.token_urlsafe(32)

def make_link_token() -> str:
    s = URLSafeSerializer(SECRET_KEY, salt="signing")
    return s.dumps({"nonce": secrets.token_hex(16)})

def is_link_token(token: str) -> bool:
    s = URLSafeSerializer(SECRET_KEY, salt="signing")
    try:
        s.loads(token)
    except BadSignature:
        return False
    return True
