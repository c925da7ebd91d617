import base64, binascii, hashlib, json, secrets
from typing import Optional
from itsdangerous import BadData, URLSafeSerializer

def b64_to_bytes(data: str) -> bytes:
    # accepts raw base64 or a "data:<mime>;base64,...." URL
    if data.startswith("data:") and "," in data:
        data = data.split(",", 1)[1]
    return base64.b64decode(data, validate=False)

def b64_json(obj) -> str:
    return base64.b64encode(json.dumps(obj).encode()).decode()

def decode_b64_json(value: str):
    try:
        return json.loads(base64.b64decode(value).decode("utf-8"))
    except (binascii.Error, UnicodeDecodeError, ValueError):
        return None

def sha256_bytes(b: bytes) -> str:
    return hashlib.sha256(b).hexdigest()

def canonical_json(obj) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), default=str)

def make_token(secret_key: str, payload: dict) -> str:
    s = URLSafeSerializer(secret_key, salt="signing")
    return s.dumps({**payload, "n": secrets.token_urlsafe(16)})

def read_token(secret_key: str, token: str) -> Optional[dict]:
    s = URLSafeSerializer(secret_key, salt="signing")
    try:
        return s.loads(token)
    except BadData:
        return None

def short_address(address: str, head: int = 6, tail: int = 4) -> str:
    if len(address) <= head + tail:
        return address
    return f"{address[:head]}...{address[-tail:]}"

def mask_email(email: Optional[str]) -> Optional[str]:
    if not email or "@" not in email:
        return email
    local, domain = email.split("@", 1)
    return f"{local[:1]}***@{domain}"

def is_wallet_address(value: Optional[str]) -> bool:
    return bool(value) and value.startswith("0x")
