import re
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Tuple
from urllib.parse import quote_plus

UUID_RE = re.compile(r"^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$")
FIRST_INT_RE = re.compile(r"\b(\d{1,9})\b")
ISO_DAY_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
ORDINAL_RE = re.compile(r"(\d+)(st|nd|rd|th)\b")
LAST_DAYS_RE = re.compile(r"\blast\s+(\d{1,3})\s+days?\b")
SINCE_RE = re.compile(r"\bsince\s+(\d{4}-\d{2}-\d{2})\b")

_HOST_SPLIT_RE = re.compile(r"[\s,;:/\\|()\[\]{}\"]+")
_TOKEN_SPLIT_RE = re.compile(r"[\s,;]+")
_TRIM_CHARS = "\"'.,;:()[]{}"
_HOST_CHARS_RE = re.compile(r"^[a-z0-9._-]+$")
_WORD_RE = re.compile(r"[^\W_]+", re.UNICODE)

TOP_N_CAP = 200


def clip(value: str, limit: int) -> str:
    if limit <= 0:
        return ""
    if len(value) <= limit:
        return value
    return value[:limit]


def url_escape(value: str) -> str:
    return quote_plus(value.strip())


def looks_like_uuid(value: str) -> bool:
    return bool(UUID_RE.match((value or "").strip()))


def normalize_loose_text(value: str) -> str:
    """Lower-case, fold ``_``/``-`` to spaces and collapse whitespace."""
    value = (value or "").strip().lower()
    if not value:
        return ""
    value = value.replace("_", " ").replace("-", " ")
    return " ".join(value.split())


def tokenize_words(value: str) -> List[str]:
    if not value or not value.strip():
        return []
    return _WORD_RE.findall(value.lower())


def contains_word(text: str, word: str) -> bool:
    target = (word or "").strip().lower()
    if not target or not (text or "").strip():
        return False
    return target in tokenize_words(text)


def mentions_stats(text: str) -> bool:
    """True for "stat", "stats" or "statistics"; "status" does not count."""
    return any(w.startswith("stat") and not w.startswith("status") for w in tokenize_words(text))


def collect_words(*values: str) -> List[str]:
    seen = set()
    words: List[str] = []
    for value in values:
        for word in tokenize_words(value or ""):
            if len(word) < 2 or word in seen:
                continue
            seen.add(word)
            words.append(word)
    return words


def score_name_match(query: str, *fields: str) -> int:
    """Score how well ``query`` names one of ``fields``.

    Exact match is 200, a field containing the query 120, the query containing
    a field of at least three characters 100. Otherwise every query token of
    three or more characters found in the field is worth 10. The best field
    wins.
    """
    q = normalize_loose_text(query)
    if not q:
        return 0
    parts = [p for p in q.split() if len(p) >= 3]
    best = 0
    for raw in fields:
        f = normalize_loose_text(raw or "")
        if not f:
            continue
        if f == q:
            score = 200
        elif q in f:
            score = 120
        elif f in q and len(f) >= 3:
            score = 100
        else:
            score = 10 * sum(1 for p in parts if p in f)
        best = max(best, score)
    return best


def detect_host_tokens(message: str) -> List[str]:
    """Return tokens that look like device hosts (letters, digits, ``-_.``)."""
    out: List[str] = []
    seen = set()
    for raw in _HOST_SPLIT_RE.split(message or ""):
        token = raw.strip(_TRIM_CHARS).strip()
        # "dart2's" refers to dart2.
        if token.lower().endswith("'s"):
            token = token[:-2]
        if len(token) < 3 or len(token) > 50:
            continue
        lower = token.lower()
        if looks_like_uuid(lower) or not _HOST_CHARS_RE.match(lower):
            continue
        if not any(ch.isdigit() for ch in lower) or not any(ch.isalpha() for ch in lower):
            continue
        if lower in seen:
            continue
        seen.add(lower)
        out.append(token)
    return out


def is_full_host_token(value: str) -> bool:
    """True for canonical hosts such as ``moco-brt-briggs-001``."""
    value = (value or "").strip()
    if not value or any(ch.isspace() for ch in value):
        return False
    return len([p for p in value.split("-") if p]) >= 3


def extract_top_n(message: str) -> int:
    parts = (message or "").lower().split()
    for idx, part in enumerate(parts[:-1]):
        if part != "top":
            continue
        candidate = parts[idx + 1]
        if candidate.isdigit() and int(candidate) > 0:
            return min(int(candidate), TOP_N_CAP)
    return 0


def extract_first_int(message: str) -> int:
    match = FIRST_INT_RE.search(message or "")
    if not match:
        return 0
    value = int(match.group(1))
    return value if value > 0 else 0


def extract_after_keyword(message: str, keyword: str) -> str:
    """Text after the first case-insensitive ``keyword``, original casing kept."""
    message = (message or "").strip()
    key = (keyword or "").strip().lower()
    if not message or not key:
        return ""
    idx = message.lower().find(key)
    if idx < 0:
        return ""
    return message[idx + len(key):].strip()


def extract_campaign_id(message: str) -> str:
    for raw in _TOKEN_SPLIT_RE.split(message or ""):
        token = raw.strip("()[]{}\"' ")
        if looks_like_uuid(token):
            return token
    return ""


def extract_status_filter(message: str) -> str:
    lower = (message or "").lower()
    for status in ("scheduled", "paused", "active"):
        if status in lower:
            return status
    return ""


def extract_poster_token(message: str) -> str:
    """Find a poster/creative identifier such as ``vistar_summer-2025``."""
    lower = (message or "").lower().strip()
    if not lower:
        return ""
    needs_context = not any(word in lower for word in ("poster", "creative", "detail"))
    for raw in _TOKEN_SPLIT_RE.split(message):
        token = raw.strip(_TRIM_CHARS)
        if not token or looks_like_uuid(token):
            continue
        token_lower = token.lower()
        if "_" not in token_lower and "-" not in token_lower:
            continue
        if needs_context and not token_lower.startswith("vistar"):
            continue
        if len(token) < 8:
            continue
        return token
    return ""


def normalize_city_selection(city: str, region: str, message: str) -> Tuple[str, bool]:
    """Drop a short city code that collides with a detected region.

    Returns the city to use and whether the user explicitly meant it.
    """
    city = (city or "").strip().lower()
    region = (region or "").strip().lower()
    explicit = bool(city) and (len(city) >= 3 or not region or "city" in (message or "").lower())
    if region and not explicit:
        city = ""
    return city, explicit


# Date windows. The Gateway wants RFC3339 UTC day boundaries with an exclusive end.


def rfc3339(moment: datetime) -> str:
    return moment.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _utc_midnight(moment: datetime) -> datetime:
    moment = moment.astimezone(timezone.utc)
    return datetime(moment.year, moment.month, moment.day, tzinfo=timezone.utc)


def _parse_iso_day(value: str) -> Optional[datetime]:
    value = value.strip()[:10]
    if not ISO_DAY_RE.match(value):
        return None
    try:
        return datetime.strptime(value, "%Y-%m-%d").replace(tzinfo=timezone.utc)
    except ValueError:
        return None


def _parse_month_day(value: str) -> Optional[datetime]:
    value = ORDINAL_RE.sub(r"\1", value.replace(",", " "))
    value = " ".join(value.split())
    for fmt in ("%B %d %Y", "%b %d %Y"):
        try:
            return datetime.strptime(value, fmt).replace(tzinfo=timezone.utc)
        except ValueError:
            continue
    return None


def _window(start: Optional[datetime], end: Optional[datetime]) -> Tuple[str, str]:
    if start is None or end is None or start >= end:
        return "", ""
    return rfc3339(start), rfc3339(end)


def extract_date_range(message: str) -> Tuple[str, str]:
    """Parse ``from YYYY-MM-DD to YYYY-MM-DD``; the end day is inclusive."""
    lower = (message or "").lower().strip()
    idx = lower.find(" to ")
    if idx < 0:
        return "", ""
    left, right = lower[:idx].strip(), lower[idx + 4:].strip()
    start_idx = left.rfind("from ")
    if start_idx >= 0:
        left = left[start_idx + 5:].strip()
    right = re.split(r"[\n,;]", right, maxsplit=1)[0].strip()
    start = _parse_iso_day(left)
    end = _parse_iso_day(right)
    if start is None or end is None:
        return "", ""
    return _window(start, end + timedelta(days=1))


def extract_natural_date_range(message: str, now: Optional[datetime] = None) -> Tuple[str, str]:
    """Parse ``from january 2 2026 to/till february 1 2026`` (or ``to today``)."""
    lower = (message or "").lower().strip()
    idx = lower.find("from ")
    if idx < 0:
        return "", ""
    rest = lower[idx + 5:].strip()
    match = re.search(r"\s(till|to)\s", rest)
    if not match:
        return "", ""
    from_part = rest[: match.start()].strip()
    to_part = rest[match.end():].strip()
    start = _parse_month_day(from_part)
    if "today" in to_part:
        end: Optional[datetime] = _utc_midnight(now or datetime.now(timezone.utc))
    else:
        end = _parse_month_day(to_part)
    if start is None or end is None:
        return "", ""
    return _window(start, end + timedelta(days=1))


def extract_relative_window(message: str, now: Optional[datetime] = None) -> Tuple[str, str]:
    """``today``, ``yesterday``, ``last N days`` and ``since YYYY-MM-DD``."""
    lower = (message or "").lower()
    today = _utc_midnight(now or datetime.now(timezone.utc))
    tomorrow = today + timedelta(days=1)
    since = SINCE_RE.search(lower)
    if since:
        return _window(_parse_iso_day(since.group(1)), tomorrow)
    last = LAST_DAYS_RE.search(lower)
    if last and int(last.group(1)) > 0:
        return _window(today - timedelta(days=int(last.group(1))), tomorrow)
    if contains_word(lower, "yesterday"):
        return _window(today - timedelta(days=1), today)
    if contains_word(lower, "today"):
        return _window(today, tomorrow)
    return "", ""


def extract_time_window(message: str, now: Optional[datetime] = None) -> Tuple[str, str]:
    for start, end in (
        extract_date_range(message),
        extract_natural_date_range(message, now=now),
        extract_relative_window(message, now=now),
    ):
        if start and end:
            return start, end
    return "", ""


# Creative upload parameters.

DAY_ALIASES = (
    ("monday", "mon"), ("mon", "mon"), ("tuesday", "tue"), ("tue", "tue"),
    ("wednesday", "wed"), ("wed", "wed"), ("thursday", "thu"), ("thu", "thu"),
    ("friday", "fri"), ("fri", "fri"), ("saturday", "sat"), ("sat", "sat"),
    ("sunday", "sun"), ("sun", "sun"),
)
TIME_SLOT_RE = re.compile(r"\b(?:[01]?[0-9]|2[0-3]):[0-5][0-9]\s*-\s*(?:[01]?[0-9]|2[0-3]):[0-5][0-9]\b")
DEVICE_ID_RE = re.compile(r"\bdevice\s+(?:id\s+)?(\d{1,9})\b")
_DEVICE_LIST_STOPS = ("\n", ";", " with ", " where ", " from ", " campaign", " day", " slot", " time")


def _unique(values) -> List[str]:
    seen = set()
    out: List[str] = []
    for value in values:
        if value and value not in seen:
            seen.add(value)
            out.append(value)
    return out


def parse_selected_days(message: str) -> List[str]:
    """Three-letter day codes in week order, e.g. ``["mon", "wed"]``."""
    lower = (message or "").lower()
    return _unique(code for name, code in DAY_ALIASES if name in lower)


def parse_time_slots(message: str) -> List[str]:
    return _unique(m.replace(" ", "") for m in TIME_SLOT_RE.findall(message or ""))


def parse_devices_list(message: str) -> List[str]:
    """Device ids listed after ``devices``, up to the next clause."""
    lower = (message or "").lower()
    idx = lower.find("devices")
    if idx < 0:
        return []
    rest = lower[idx + len("devices"):].strip().lstrip(" :")
    stop = len(rest)
    for sep in _DEVICE_LIST_STOPS:
        j = rest.find(sep)
        if 0 <= j < stop:
            stop = j
    chunk = rest[:stop].strip().strip("[](){}")
    return _unique(p.strip().strip("\"'") for p in re.split(r"[,\s]+", chunk))


def extract_explicit_device_id(message: str) -> int:
    """Numeric id written as ``device 12`` or ``device id 12``."""
    match = DEVICE_ID_RE.search((message or "").lower())
    return int(match.group(1)) if match else 0
