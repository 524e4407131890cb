import time

from itsdangerous import BadSignature, URLSafeSerializer


def _serializer(secret_key: str) -> URLSafeSerializer:
    return URLSafeSerializer(secret_key, salt="csrf-token")


def generate_csrf_token(secret_key: str, user_id: int, max_age_hours: int = 2) -> str:
    serializer = _serializer(secret_key)
    timestamp = int(time.time())
    expiry = timestamp + (max_age_hours * 3600)

    token_data = {"u": user_id, "ts": timestamp, "exp": expiry}

    return serializer.dumps(token_data)


def validate_csrf_token(secret_key: str, token: str, user_id: int) -> bool:
    if not token:
        return False
    serializer = _serializer(secret_key)
    try:
        data = serializer.loads(token)
    except BadSignature:
        return False

    if data.get("u") != user_id:
        return False

    if int(time.time()) > data.get("exp", 0):
        return False

    return True
