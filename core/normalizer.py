"""
normalizer.py
--------------
Descriptor normalization and merchant fingerprinting.

Turns a raw bank descriptor ("PAG*IFOOD *RESTAURANTE SAO PAULO 12/03")
into four derived forms:

    - normalized descriptor: lower-cased, accent-stripped, punctuation and
      whitespace collapsed. Idempotent.
    - description key: prefix-standardized, noise-free, stop-word-free token
      key used for history matching ("ifood_restaurante").
    - fingerprints: strong "F:<MERCHANT>" when a curated merchant is present,
      weak "W:<description key>" otherwise-or-additionally.
    - detected entities: CNPJ/CPF, e-mail, domain, known platform (and
      whether it is an intermediary such as PagSeguro or MercadoPago), PIX
      key, bank-fee wording. Carried along for display and directory
      lookups; the cascade does not categorize on them.

Pure functions of the input text. Word lists and patterns come from config.yaml.
"""

import re
import unicodedata
from functools import lru_cache

from config.config_loader import get_normalizer_config
from core.models import DescriptorFingerprint, DetectedEntities


_NON_ALNUM = re.compile(r"[^a-z0-9]+")
_TOKEN_SPLIT = re.compile(r"[\s\-_./,;:*]+")
_DIGITS = re.compile(r"^\d+$")
_CEP = re.compile(r"\b\d{5}-?\d{3}\b")

_CNPJ = re.compile(r"\d{2}\.?\d{3}\.?\d{3}/?\d{4}-?\d{2}")
_CPF = re.compile(r"\d{3}\.?\d{3}\.?\d{3}-?\d{2}")
_EMAIL = re.compile(r"[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}")
_DOMAIN = re.compile(r"(?:www\.)?([a-zA-Z0-9-]+(?:\.[a-zA-Z]{2,})+)")
_PIX = re.compile(r"\bPIX\b")
_PIX_PHONE = re.compile(r"^\+?(?:55)?\d{10,11}$")
_PIX_RANDOM = re.compile(r"^[a-f0-9]{8}-[a-f0-9]{4}-[a-f0-9]{4}-[a-f0-9]{4}-[a-f0-9]{12}$", re.IGNORECASE)


def strip_accents(text: str) -> str:
    """Removes combining diacritics ("AÇÚCAR" -> "ACUCAR")."""
    decomposed = unicodedata.normalize("NFKD", text)
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch))


def normalize_descriptor(text: str | None) -> str:
    """
    Canonical lookup form of a descriptor.

    Lower-cases, strips accents, and collapses every run of non-alphanumeric
    characters into a single space. normalize_descriptor(normalize_descriptor(x))
    == normalize_descriptor(x) for every x.
    """
    if not text or not isinstance(text, str):
        return ""
    lowered = strip_accents(text).lower()
    return _NON_ALNUM.sub(" ", lowered).strip()


def meaningful_length(text: str | None) -> int:
    """Number of alphanumeric characters left after normalization."""
    return len(normalize_descriptor(text).replace(" ", ""))


# =============================================================================
# COMPILED CONFIG
# =============================================================================

@lru_cache(maxsize=1)
def _compiled() -> dict:
    """
    Compiles config word lists once.

    Cleared by clear_normalizer_cache(); tests that swap config call it.
    """
    cfg = get_normalizer_config()
    gateways = sorted(cfg["gateway_prefixes"], key=len, reverse=True)
    return {
        "prefix_map": [(str(p), str(r)) for p, r in cfg["prefix_map"]],
        "noise": [re.compile(p, re.IGNORECASE) for p in cfg["noise_patterns"]],
        "stopwords": {str(w).lower() for w in cfg["stopwords"]},
        "gateway": re.compile(
            r"^(?:" + "|".join(re.escape(g) for g in gateways) + r")\s*\*\s*",
            re.IGNORECASE,
        ),
        "location": re.compile(
            r"\b(?:" + "|".join(re.escape(t) for t in cfg["location_tokens"]) + r")\b",
            re.IGNORECASE,
        ),
        "strong": frozenset(str(m).upper() for m in cfg["strong_merchants"]),
        "strong_by_length": sorted(
            {str(m).upper() for m in cfg["strong_merchants"]}, key=lambda m: (-len(m), m)
        ),
        "min_compound": cfg["min_compound_merchant_length"],
        "max_key_length": cfg["max_key_length"],
        "max_key_tokens": cfg["max_key_tokens"],
        "ordered_key_tokens": cfg["ordered_key_tokens"],
        "min_token_length": cfg["min_token_length"],
        "min_weak_token_length": cfg["min_weak_token_length"],
        "platforms": [
            (re.compile(p["pattern"], re.IGNORECASE), str(p["platform"]), bool(p["intermediary"]))
            for p in cfg["known_platforms"]
        ],
        "bank_fee": re.compile(
            r"\b(?:" + "|".join(re.escape(str(w).upper()) for w in cfg["bank_fee_keywords"]) + r")\b"
        ),
    }


def clear_normalizer_cache() -> None:
    _compiled.cache_clear()


# =============================================================================
# DESCRIPTION KEY
# =============================================================================

def _standardize_prefix(text: str, prefix_map: list[tuple[str, str]]) -> str:
    lowered = text.lower()
    for prefix, replacement in prefix_map:
        if lowered.startswith(prefix):
            return f"{replacement} {lowered[len(prefix):]}"
    return lowered


def _remove_noise(text: str, patterns: list[re.Pattern]) -> str:
    for pattern in patterns:
        text = pattern.sub(" ", text)
    return text


def _key_tokens(text: str, c: dict) -> list[str]:
    tokens = [
        t for t in _TOKEN_SPLIT.split(text)
        if len(t) >= c["min_token_length"]
        and t not in c["stopwords"]
        and not _DIGITS.match(t)
    ]
    # Collapse any punctuation left inside a token ("c&a" -> "ca")
    tokens = [_NON_ALNUM.sub("", t) for t in tokens]
    return [t for t in tokens if len(t) >= c["min_token_length"]][: c["max_key_tokens"]]


def description_key(text: str | None) -> str:
    """
    Stable history key for a descriptor.

    The first tokens keep their order (merchant names lead), the remainder is
    sorted so reordered trailing noise maps to the same key.
    """
    if not text or not isinstance(text, str):
        return ""
    c = _compiled()

    normalized = _standardize_prefix(text.strip(), c["prefix_map"])
    normalized = strip_accents(normalized).lower()
    normalized = _remove_noise(normalized, c["noise"])

    tokens = _key_tokens(normalized, c)
    ordered = tokens[: c["ordered_key_tokens"]]
    remaining = sorted(tokens[c["ordered_key_tokens"]:])

    return "_".join(ordered + remaining)[: c["max_key_length"]]


def descriptions_similar(first: str, second: str) -> bool:
    """Two descriptors are similar when their keys share enough tokens."""
    key1, key2 = description_key(first), description_key(second)
    if not key1 or not key2:
        return False
    if key1 == key2:
        return True

    tokens1, tokens2 = key1.split("_"), key2.split("_")
    shared = sum(1 for t in tokens1 if t in tokens2)
    return shared >= 2 or (shared >= 1 and min(len(tokens1), len(tokens2)) == 1)


def extract_merchant_name(text: str | None) -> str:
    """Display label: the first four meaningful words of the descriptor."""
    if not text:
        return ""
    c = _compiled()

    name = text.strip()
    lowered = name.lower()
    for prefix, _ in c["prefix_map"]:
        if lowered.startswith(prefix):
            name = name[len(prefix):].strip()
            break

    name = _remove_noise(name, c["noise"])
    words = [
        w for w in _TOKEN_SPLIT.split(name)
        if len(w) >= c["min_token_length"]
        and w.lower() not in c["stopwords"]
        and not _DIGITS.match(w)
    ][:4]
    return " ".join(words).strip() or text[:30]


# =============================================================================
# DETECTED ENTITIES
# =============================================================================

def _digits_only(text: str) -> str:
    return re.sub(r"\D", "", text)


def detect_platform(text: str | None) -> tuple[str | None, bool]:
    """
    First known platform named in the descriptor, and whether it is an
    intermediary collecting on behalf of the real merchant.
    """
    if not text:
        return None, False
    upper = strip_accents(text).upper()
    for pattern, platform, intermediary in _compiled()["platforms"]:
        if pattern.search(upper):
            return platform, intermediary
    return None, False


def is_bank_fee(text: str | None) -> bool:
    """True when the descriptor reads like a bank fee or charge (TARIFA, IOF, JUROS...)."""
    if not text:
        return False
    return bool(_compiled()["bank_fee"].search(strip_accents(text).upper()))


def detect_pix_info(text: str | None) -> tuple[bool, str | None]:
    """
    Whether the descriptor is a PIX transfer and, when visible, its key.

    Whole-token keys (phone, random UUID key) are checked before the
    embedded ones (e-mail, CNPJ, CPF) so a UUID's digit run is never
    mistaken for a CPF.
    """
    if not text or not _PIX.search(strip_accents(text).upper()):
        return False, None

    tokens = text.split()
    for token in tokens:
        if _PIX_PHONE.match(token):
            return True, token
    for token in tokens:
        if _PIX_RANDOM.match(token):
            return True, token.lower()
    for pattern in (_EMAIL, _CNPJ, _CPF):
        match = pattern.search(text)
        if match:
            return True, match.group(0)
    return True, None


def detect_entities(text: str | None) -> DetectedEntities:
    """Documents, contact details, platform and PIX data found in a descriptor."""
    if not text or not isinstance(text, str):
        return DetectedEntities()

    upper = strip_accents(text).upper()
    cnpj = _CNPJ.search(upper)
    cpf = None if cnpj else _CPF.search(upper)
    email = _EMAIL.search(text)
    domain = _DOMAIN.search(upper)
    platform, intermediary = detect_platform(text)
    is_pix, pix_key = detect_pix_info(text)

    return DetectedEntities(
        cnpj=_digits_only(cnpj.group(0)) if cnpj else None,
        cpf=_digits_only(cpf.group(0)) if cpf else None,
        email=email.group(0).lower() if email else None,
        domain=domain.group(1).lower() if domain else None,
        platform=platform,
        is_intermediary=intermediary,
        is_pix=is_pix,
        pix_key=pix_key,
        is_bank_fee=is_bank_fee(text),
    )


def generate_matching_keys(text: str | None) -> list[str]:
    """
    Candidate keys for looking a descriptor up in a merchant directory:
    the compact description key, the platform, the first token and the
    first two tokens joined. Duplicates removed, order kept.
    """
    key = description_key(text)
    tokens = key.split("_") if key else []
    platform, _ = detect_platform(text)

    candidates = [key.replace("_", "")]
    if platform:
        candidates.append(platform.lower())
    if tokens:
        candidates.append(tokens[0])
    if len(tokens) >= 2:
        candidates.append(tokens[0] + tokens[1])
    return list(dict.fromkeys(c for c in candidates if c))


# =============================================================================
# FINGERPRINTS
# =============================================================================

def _extract_strong_merchant(tokens: list[str], c: dict) -> str | None:
    """
    Finds a curated merchant among the tokens.

    Exact tokens win, then two adjacent tokens joined ("MERCADO LIVRE" ->
    "MERCADOLIVRE"), then tokens that start with a long merchant name
    ("NETFLIXCOM" -> "NETFLIX").
    """
    strong = c["strong"]
    for token in tokens:
        if token in strong:
            return token
    for left, right in zip(tokens, tokens[1:]):
        if left + right in strong:
            return left + right
    for token in tokens:
        for merchant in c["strong_by_length"]:
            if len(merchant) >= c["min_compound"] and token.startswith(merchant):
                return merchant
    return None


def _weak_from_tokens(tokens: list[str], c: dict) -> str | None:
    meaningful = sorted(
        t for t in tokens if len(t) >= c["min_weak_token_length"]
    )[:3]
    if not meaningful:
        return None
    return "W:" + "_".join(meaningful)


def generate_fingerprints(raw_descriptor: str | None) -> DescriptorFingerprint:
    """
    Builds the strong and weak fingerprints for a raw descriptor.

    Gateway prefixes ("PAG*", "MP*") and location tokens ("SAO", "SP", CEP
    codes) are dropped first so the same merchant maps to the same key across
    acquirers and branches.
    """
    if not raw_descriptor or not isinstance(raw_descriptor, str):
        return DescriptorFingerprint(normalized_descriptor="", description_key="")
    c = _compiled()

    cleaned = strip_accents(raw_descriptor.strip()).upper()
    cleaned = c["gateway"].sub("", cleaned)
    cleaned = _CEP.sub(" ", cleaned)
    cleaned = c["location"].sub(" ", cleaned)
    cleaned = re.sub(r"\s+", " ", cleaned).strip()

    key = description_key(cleaned)
    tokens = [
        _NON_ALNUM.sub("", t.lower()).upper()
        for t in _TOKEN_SPLIT.split(cleaned)
    ]
    tokens = [t for t in tokens if len(t) >= c["min_token_length"] and not _DIGITS.match(t)]

    merchant = _extract_strong_merchant(tokens, c)
    weak = f"W:{key}" if key else _weak_from_tokens(tokens, c)

    return DescriptorFingerprint(
        normalized_descriptor=normalize_descriptor(raw_descriptor),
        description_key=key,
        strong=f"F:{merchant}" if merchant else None,
        weak=weak,
        merchant_canon=merchant,
        entities=detect_entities(raw_descriptor),
    )


def has_strong_fingerprint(raw_descriptor: str | None) -> bool:
    return generate_fingerprints(raw_descriptor).strong is not None


def extract_merchant_canon(raw_descriptor: str | None) -> str | None:
    """Curated merchant behind a descriptor ("PAG*NETFLIX.COM" -> "NETFLIX"), if any."""
    return generate_fingerprints(raw_descriptor).merchant_canon
