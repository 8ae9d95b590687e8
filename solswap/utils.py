import re
import unicodedata


def normalize_text(text: str) -> str:
    """Purpose: Normalize free-form chat text for stable keyword matching.
    Inputs/Outputs: Input is a raw string; output is a lowercase ASCII-only string with
        diacritics removed, punctuation turned into spaces and whitespace collapsed.
    Side Effects / State: None; pure function.
    Dependencies: Uses unicodedata and regex; called by the intent classifier.
    Failure Modes: Returns an empty string when input is falsy.
    If Removed: Keyword rules miss punctuated or accented variants ("Sell!", "naíra").
    Testing Notes: "I've SENT it!" normalizes to "i ve sent it".
    """
    # Normalize to lowercase and strip diacritics for consistent matching.
    if not text:
        return ""
    lowered = text.lower()
    decomposed = unicodedata.normalize("NFD", lowered)
    stripped = "".join(ch for ch in decomposed if unicodedata.category(ch) != "Mn")
    cleaned = re.sub(r"[^a-z0-9\s]+", " ", stripped)
    return re.sub(r"\s+", " ", cleaned).strip()


def mask_digits(value: object) -> str:
    """Mask account-like values for logging, keeping only the last three digits."""
    if value is None:
        return ""
    digits = re.findall(r"\d", str(value))
    if len(digits) < 4:
        return "***"
    return "***" + "".join(digits[-3:])
