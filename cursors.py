from datetime import datetime
from typing import Optional

from itsdangerous import BadSignature, URLSafeSerializer

from config import get_settings
from feed import FeedCursor


def _serializer() -> URLSafeSerializer:
    settings = get_settings()
    return URLSafeSerializer(settings.cursor_secret, salt="feed-cursor")


def encode_cursor(cursor: Optional[FeedCursor]) -> Optional[str]:
    if cursor is None:
        return None
    token_data = {
        "t": cursor.occurred_at.isoformat(),
        "s": cursor.seq,
        "i": cursor.event_id,
    }
    return _serializer().dumps(token_data)


def _parse_token(token: str) -> FeedCursor:
    # a bare ISO timestamp behaves like the default "before" cursor
    try:
        return FeedCursor(datetime.fromisoformat(token))
    except ValueError:
        pass

    try:
        data = _serializer().loads(token)
    except BadSignature as exc:
        raise ValueError("Invalid feed cursor") from exc

    try:
        occurred_at = datetime.fromisoformat(data["t"])
    except (KeyError, TypeError, ValueError) as exc:
        raise ValueError("Invalid feed cursor") from exc
    return FeedCursor(occurred_at, data.get("s"), data.get("i"))


def decode_cursor(token: Optional[str]) -> Optional[FeedCursor]:
    if not token:
        return None
    cursor = _parse_token(token)
    if cursor.occurred_at.tzinfo is not None:
        raise ValueError("Feed cursors must use local wall-clock times")
    return cursor
