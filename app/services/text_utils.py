import math
import re
from dataclasses import dataclass, field
from typing import Iterable, List

URL_PATTERN = re.compile(r"https?://[^\s]+", re.IGNORECASE)
EMAIL_PATTERN = re.compile(r"[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}")
WHATSAPP_LINK_PATTERN = re.compile(r"(?:https?://)?wa\.me/(\d{10,15})", re.IGNORECASE)
PHONE_PATTERN = re.compile(
    r"(?:^|(?<=[\s:]))(\+?(?:55\s?)?[(\s]*\d{2}\s*[)\s]*\s*\d{4,5}[\s-]?\d{4})(?=\s|$|[.,;!?])"
)
CONTACT_KEYWORDS = re.compile(r"contato|telefone|fone|número|whatsapp|wa\.me", re.IGNORECASE)

# Removed from speech-bound text.
_AUDIO_STRIP_PATTERNS = [
    re.compile(r"(?:https?://)?wa\.me/[^\s]+", re.IGNORECASE),
    URL_PATTERN,
    re.compile(r"www\.[^\s]+", re.IGNORECASE),
    EMAIL_PATTERN,
    re.compile(r"[a-zA-Z0-9.-]+\.(?:com\.br|com|net|org|gov|edu)\b", re.IGNORECASE),
    re.compile(r"\+?[\d\s\-()]{10,}"),
    re.compile(r"\b(?:Rua|Av|Avenida|R\.|Rod|Rodovia)\s[^,\n]{10,}", re.IGNORECASE),
    re.compile(r"\d{5}-?\d{3}"),
]

SENTENCE_SPLIT = re.compile(r"([.!?]+)")
MAX_RESPONSE_PARTS = 4


@dataclass
class ContactArtifacts:
    text: str
    links: List[str] = field(default_factory=list)
    emails: List[str] = field(default_factory=list)
    phones: List[str] = field(default_factory=list)
    whatsapp_numbers: List[str] = field(default_factory=list)

    @property
    def has_artifacts(self) -> bool:
        return bool(self.links or self.emails or self.phones or self.whatsapp_numbers)


def normalize_for_matching(text: str) -> str:
    """Normalize text for matching short phrases (casefold + trim punctuation)."""
    if not text:
        return ""

    normalized = text.strip().casefold()
    normalized = re.sub(r"\s+", " ", normalized)
    # "tchau!!" -> "tchau", "ok?" -> "ok"
    normalized = re.sub(r"^[^\w]+|[^\w]+$", "", normalized)
    return normalized


def _remove_all(text: str, values: Iterable[str]) -> str:
    for value in values:
        text = text.replace(value, " ")
    return text


def extract_contact_artifacts(text: str) -> ContactArtifacts:
    """Pull URLs, emails, wa.me links and phone numbers out of a reply.

    Phones stay inline when the reply already labels them as contact info
    ("telefone: ...", "nosso whatsapp ...").
    """
    if not text:
        return ContactArtifacts(text="")

    whatsapp_numbers = []
    for match in WHATSAPP_LINK_PATTERN.finditer(text):
        if match.group(1) not in whatsapp_numbers:
            whatsapp_numbers.append(match.group(1))
    clean = WHATSAPP_LINK_PATTERN.sub(" ", text)

    links = [url.rstrip(".,;!?)") for url in URL_PATTERN.findall(clean)]
    clean = _remove_all(clean, URL_PATTERN.findall(clean))

    emails = EMAIL_PATTERN.findall(clean)
    clean = _remove_all(clean, emails)

    phones = []
    if not CONTACT_KEYWORDS.search(text):
        for match in PHONE_PATTERN.finditer(clean):
            phone = match.group(1).strip(" :,")
            digits = re.sub(r"\D", "", phone)
            if 10 <= len(digits) <= 15:
                phones.append(phone)
        clean = _remove_all(clean, phones)

    clean = re.sub(r"\s+", " ", clean).strip()
    clean = re.sub(r"\s+([.,;!?])", r"\1", clean)
    return ContactArtifacts(
        text=clean,
        links=links,
        emails=emails,
        phones=phones,
        whatsapp_numbers=whatsapp_numbers,
    )


def filter_contact_info_for_audio(text: str) -> str:
    """Strip phones, emails, sites and addresses from text that will be spoken."""
    if not text:
        return ""
    for pattern in _AUDIO_STRIP_PATTERNS:
        text = pattern.sub("", text)
    text = re.sub(r"\s*[-:,]\s*", " ", text)
    text = re.sub(r"\s+", " ", text)
    return text.strip()


def split_response_parts(text: str, max_parts: int = MAX_RESPONSE_PARTS) -> List[str]:
    """Split a reply on sentence punctuation into at most ``max_parts`` chunks."""
    if not text or not text.strip():
        return []

    pieces = SENTENCE_SPLIT.split(text)
    sentences = []
    for index in range(0, len(pieces), 2):
        body = pieces[index].strip()
        if not body:
            continue
        punctuation = pieces[index + 1] if index + 1 < len(pieces) else ""
        sentences.append(body + punctuation)

    if len(sentences) <= max_parts:
        return sentences

    target_length = math.ceil(len(text) / max_parts)
    combined: List[str] = []
    current = ""
    for sentence in sentences:
        if not current:
            current = sentence
        elif len(current) + len(sentence) < target_length * 1.5 and len(combined) < max_parts - 1:
            current = f"{current} {sentence}"
        elif len(combined) < max_parts - 1:
            combined.append(current)
            current = sentence
        else:
            current = f"{current} {sentence}"
    if current:
        combined.append(current)
    return combined


def truncate_text(text: str, max_length: int) -> str:
    if len(text) <= max_length:
        return text
    if max_length <= 3:
        return text[:max_length]
    return text[: max_length - 3].rstrip() + "..."


def combine_batch_text(texts: Iterable[str]) -> str:
    """Join a batch the way a person would read it: short bursts on one line."""
    texts = [t.strip() for t in texts if t and t.strip()]
    if not texts:
        return ""
    if all(len(t) < 20 for t in texts):
        return " ".join(texts)
    return "\n".join(texts)
