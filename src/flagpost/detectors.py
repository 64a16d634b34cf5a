"""Rule-based pattern detectors.

Each detector is a pure function of the input text that returns a list of
`Flag` objects with `source="rule"`, a span into the original text and the
matched snippet. Detectors never raise for string input, including the empty
string.
"""

from __future__ import annotations
import re
from functools import lru_cache
from typing import Any, Callable, Dict, List, Optional, Pattern, Tuple
from urllib.parse import urlsplit

from .schema import Flag

Detector = Callable[[str], List[Flag]]

# --- Default lexicon ---
DEFAULT_LEXICON: Dict[str, Any] = {
    "wordlists": {
        "profanity": {
            "weight": 18,
            "terms": [
                "fuck",
                "fucking",
                "fucker",
                "motherfucker",
                "shit",
                "bullshit",
                "bitch",
                "asshole",
                "bastard",
                "dickhead",
                "wanker",
                "prick",
                "cunt",
            ],
        },
        "hate": {
            "weight": 28,
            "terms": [
                "subhuman",
                "inferior race",
                "go back to your country",
                "ethnic cleansing",
                "master race",
                "white power",
                "gas the",
                "vermin like you",
            ],
        },
        "violence": {
            "weight": 30,
            "terms": [
                "kill you",
                "i will kill",
                "gonna kill",
                "shoot up",
                "shoot you",
                "stab you",
                "bomb the",
                "beat you up",
                "slit your throat",
                "burn your house",
            ],
        },
        "sexual": {
            "weight": 22,
            "terms": [
                "porn",
                "nudes",
                "send nudes",
                "xxx",
                "nsfw",
                "onlyfans",
                "sex tape",
                "hookup tonight",
            ],
        },
        "selfharm": {
            "weight": 40,
            "terms": [
                "kill myself",
                "end my life",
                "want to die",
                "suicide",
                "cut myself",
                "self harm",
                "self-harm",
                "hang myself",
            ],
        },
    },
    "link_shorteners": [
        "bit.ly",
        "t.co",
        "goo.gl",
        "tinyurl.com",
        "ow.ly",
        "is.gd",
        "buff.ly",
        "cutt.ly",
        "t.ly",
        "rebrand.ly",
    ],
    "scam_phrases": [r"free\s+money", r"giveaway", r"dm\s+to\s+claim"],
    "max_links": 3,
}

# --- Regexes ---
ZERO_WIDTH_RE = re.compile(r"[\u200B-\u200D\uFEFF]")
LEET_MAP = {
    "0": "o",
    "1": "i",
    "3": "e",
    "4": "a",
    "5": "s",
    "7": "t",
    "$": "s",
    "@": "a",
    "!": "i",
    "|": "l",
}
FULLWIDTH_START = 0xFF01
FULLWIDTH_END = 0xFF5E

EMAIL_RE = re.compile(r"\b[A-Z0-9._%+-]+@[A-Z0-9.-]+\.[A-Z]{2,}\b", re.IGNORECASE)
PHONE_RE = re.compile(
    r"\b(?:\+?\d{1,3}[\s.-]?)?(?:\(?\d{2,4}\)?[\s.-]?)?\d{3,4}[\s.-]?\d{3,4}\b"
)
CARD_RE = re.compile(r"\b(?:\d[ -]*?){13,19}\b")
URL_RE = re.compile(
    r"\bhttps?://[\w.-]+(?:/[\w\-._~:/?#\[\]@!$&'()*+,;=%]*)?", re.IGNORECASE
)
REPEAT_PUNCT_RE = re.compile(r"([!?.])\1{3,}")
CAPS_RE = re.compile(r"[A-Z]")

SNIPPET_LEN = 140


def normalize_for_match(text: str) -> Tuple[str, List[int]]:
    """Normalizes text for phrase matching and keeps a map back to the input.

    Performs fullwidth-to-ASCII folding, lowercasing, leet speak folding,
    zero-width character removal and whitespace collapsing.

    Args:
        text: The raw text.

    Returns:
        A tuple of the normalized text and a list mapping each normalized
        character position to its index in `text`.
    """
    out: List[str] = []
    offsets: List[int] = []
    prev_space = False
    for i, ch in enumerate(text):
        if ZERO_WIDTH_RE.match(ch):
            continue
        if ch.isspace():
            if prev_space:
                continue
            prev_space = True
            out.append(" ")
            offsets.append(i)
            continue
        prev_space = False
        code = ord(ch)
        if FULLWIDTH_START <= code <= FULLWIDTH_END:
            ch = chr(code - 0xFEE0)
        for c in ch.lower():
            out.append(LEET_MAP.get(c, c))
            offsets.append(i)
    return "".join(out), offsets


@lru_cache(maxsize=32)
def build_term_regex(terms: Tuple[str, ...]) -> Optional[Pattern]:
    """Builds a single word-bounded regex for a tuple of phrases.

    Longer phrases are tried first so that "send nudes" wins over "nudes".

    Args:
        terms: The phrases to match, in any case.

    Returns:
        The compiled pattern, or None if there are no usable terms.
    """
    cleaned = sorted(
        {normalize_for_match(t.strip())[0] for t in terms if t.strip()},
        key=len,
        reverse=True,
    )
    if not cleaned:
        return None
    escaped = [r"(?<!\w)" + re.escape(term) + r"(?!\w)" for term in cleaned]
    return re.compile("|".join(escaped), re.IGNORECASE)


def _span_flag(
    category: str, weight: float, message: str, text: str, start: int, end: int
) -> Flag:
    return Flag(
        source="rule",
        category=category,
        weight=weight,
        message=message,
        indices=(start, end),
        snippet=text[start:end],
    )


def wordlist_detector(category: str, terms: List[str], weight: float = 20) -> Detector:
    """Creates a detector that flags every occurrence of a wordlist phrase.

    Args:
        category: The category reported on each flag.
        terms: The phrases to look for.
        weight: The weight of each flag.

    Returns:
        A detector function.
    """
    pattern = build_term_regex(tuple(terms))

    def detect(text: str) -> List[Flag]:
        if not text or pattern is None:
            return []
        norm, offsets = normalize_for_match(text)
        flags = []
        for m in pattern.finditer(norm):
            start = offsets[m.start()]
            end = offsets[m.end() - 1] + 1
            flags.append(
                _span_flag(
                    category,
                    weight,
                    f"Matched phrase: {m.group(0)}",
                    text,
                    start,
                    end,
                )
            )
        return flags

    return detect


def luhn_check(number: str) -> bool:
    """Validates a card number with the Luhn checksum."""
    digits = [int(d) for d in re.sub(r"\D", "", number)][::-1]
    if not digits:
        return False
    total = 0
    for i, d in enumerate(digits):
        if i % 2 == 1:
            d *= 2
            if d > 9:
                d -= 9
        total += d
    return total % 10 == 0


def pii_detector(text: str) -> List[Flag]:
    """Flags the first email address, phone number and card number found."""
    flags: List[Flag] = []
    email = EMAIL_RE.search(text)
    if email:
        flags.append(
            _span_flag("pii", 15, "Email address detected", text, *email.span())
        )
    phone = PHONE_RE.search(text)
    if phone:
        flags.append(_span_flag("pii", 10, "Phone number detected", text, *phone.span()))
    card = CARD_RE.search(text)
    if card and luhn_check(card.group(0)):
        flags.append(
            _span_flag("pii", 35, "Potential credit card number", text, *card.span())
        )
    return flags


def make_links_detector(
    shorteners: List[str], max_links: int = 3
) -> Detector:
    """Creates the link detector.

    Links to a known shortener weigh 30, other links 5. Posting `max_links`
    or more links adds a spam flag.
    """
    shortener_hosts = {s.lower() for s in shorteners}

    def detect(text: str) -> List[Flag]:
        flags: List[Flag] = []
        count = 0
        for m in URL_RE.finditer(text):
            count += 1
            url = m.group(0)
            try:
                host = (urlsplit(url).hostname or "").lower()
            except ValueError:
                host = ""
            if host in shortener_hosts:
                flags.append(
                    _span_flag("links", 30, "Suspicious link shortener", text, *m.span())
                )
            else:
                flags.append(_span_flag("links", 5, "External link", text, *m.span()))
        if count >= max_links:
            flags.append(
                _span_flag(
                    "spam", 15, "Too many links", text, 0, min(SNIPPET_LEN, len(text))
                )
            )
        return flags

    return detect


def make_spam_detector(scam_phrases: List[str]) -> Detector:
    """Creates the spam detector (shouting, punctuation runs, scam phrases)."""
    scam_re = re.compile("(" + "|".join(scam_phrases) + ")", re.IGNORECASE)

    def detect(text: str) -> List[Flag]:
        flags: List[Flag] = []
        length = len(text) or 1
        caps = len(CAPS_RE.findall(text))
        if caps / length > 0.5 and length > 10:
            flags.append(
                _span_flag(
                    "spam", 10, "Excessive ALL CAPS", text, 0, min(SNIPPET_LEN, length)
                )
            )
        punct = REPEAT_PUNCT_RE.search(text)
        if punct:
            flags.append(
                _span_flag("spam", 8, "Excessive punctuation", text, *punct.span())
            )
        scam = scam_re.search(text)
        if scam:
            flags.append(_span_flag("spam", 18, "Scam-like phrase", text, *scam.span()))
        return flags

    return detect


class RuleDetector:
    """Runs every rule-based detector over a piece of text."""

    def __init__(self, lexicon: Optional[Dict[str, Any]] = None):
        """Initializes the detector set.

        Args:
            lexicon: Wordlists and pattern settings. Defaults to
                `DEFAULT_LEXICON`.
        """
        self.lexicon = lexicon or DEFAULT_LEXICON
        self.detectors: List[Tuple[str, Detector]] = []
        for category, spec in self.lexicon["wordlists"].items():
            self.detectors.append(
                (category, wordlist_detector(category, spec["terms"], spec["weight"]))
            )
        self.detectors.append(("pii", pii_detector))
        self.detectors.append(
            (
                "links",
                make_links_detector(
                    self.lexicon["link_shorteners"], self.lexicon["max_links"]
                ),
            )
        )
        self.detectors.append(("spam", make_spam_detector(self.lexicon["scam_phrases"])))

    def run_all(self, text: str) -> List[Flag]:
        """Returns the concatenated flags of all detectors, in a fixed order."""
        if not text:
            return []
        flags: List[Flag] = []
        for _, detect in self.detectors:
            flags.extend(detect(text))
        return flags

    __call__ = run_all
