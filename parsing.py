from datetime import date, datetime
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Optional

TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"

# ten trillion in major units; sums of many such rows still fit a 64-bit INTEGER
MAX_AMOUNT_CENTS = 10**15

# canonical first, then what datetime-local inputs send
TIMESTAMP_INPUT_FORMATS = (
    TIMESTAMP_FORMAT,
    "%Y-%m-%dT%H:%M",
    "%Y-%m-%dT%H:%M:%S",
)

DATE_INPUT_FORMATS = ("%Y-%m-%d", "%d.%m.%Y")


def _normalize_decimal_text(value: str) -> str:
    clean = value.strip().replace(" ", "").replace(" ", "")
    for symbol in ("₴", "€", "$", "£", "¥"):
        clean = clean.replace(symbol, "")
    clean = clean.replace(",", ".")
    if clean.count(".") > 1:
        parts = clean.split(".")
        clean = "".join(parts[:-1]) + "." + parts[-1]
    return clean


def parse_decimal(value: str) -> Decimal:
    clean = _normalize_decimal_text(value)
    try:
        number = Decimal(clean)
    except InvalidOperation as exc:
        raise ValueError("Invalid number") from exc
    if not number.is_finite():
        raise ValueError("Invalid number")
    return number


def parse_amount(value: str, *, allow_negative: bool = False) -> int:
    """Convert a user-typed amount such as ``"1 234,50"`` to cents."""
    amount = parse_decimal(value)
    try:
        scaled = amount * 100
        if abs(scaled) > MAX_AMOUNT_CENTS:
            raise ValueError("Amount is too large")
        cents = int(scaled.quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    except ArithmeticError as exc:
        raise ValueError("Invalid number") from exc
    if cents < 0 and not allow_negative:
        raise ValueError("Amount must be positive")
    return cents


def parse_rate(value: Optional[str]) -> Optional[Decimal]:
    if value is None or not str(value).strip():
        return None
    try:
        return parse_decimal(str(value))
    except ValueError as exc:
        raise ValueError("Invalid exchange rate") from exc


def coerce_cents(value: object) -> int:
    """Accept an integer amount in cents, or its canonical string form."""
    if isinstance(value, bool):
        raise ValueError("Amount must be a number")
    if isinstance(value, int):
        return value
    if isinstance(value, Decimal):
        if not value.is_finite() or value != value.to_integral_value():
            raise ValueError("Amount must be a whole number of cents")
        return int(value)
    if isinstance(value, str):
        try:
            number = Decimal(value.strip())
        except InvalidOperation as exc:
            raise ValueError("Amount must be a number") from exc
        if not number.is_finite() or number != number.to_integral_value():
            raise ValueError("Amount must be a whole number of cents")
        return int(number)
    raise ValueError("Amount must be a number")


def parse_timestamp(value: object) -> datetime:
    if isinstance(value, datetime):
        return value.replace(microsecond=0)
    if not isinstance(value, str):
        raise ValueError("Invalid date/time")
    text = value.strip()
    for fmt in TIMESTAMP_INPUT_FORMATS:
        try:
            return datetime.strptime(text, fmt)
        except ValueError:
            continue
    raise ValueError(f"Invalid date/time '{text}', expected YYYY-MM-DD HH:MM:SS")


def format_timestamp(value: datetime) -> str:
    return value.strftime(TIMESTAMP_FORMAT)


def parse_date(value: str) -> date:
    text = value.strip()
    for fmt in DATE_INPUT_FORMATS:
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    raise ValueError(f"Invalid date '{text}'")
