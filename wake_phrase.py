"""
Wake phrase matching for the Mira voice assistant.

Speech recognisers rarely spell the invocation phrase the same way twice, so
matching runs against a list of heard variants ("hey mira", "hey mirror",
"hey myra", ...) after light normalisation.
"""

import re
from typing import Iterable, List, Optional

# Spellings of "hey mira" observed from the speech recogniser
DEFAULT_WAKE_PHRASES = [
    "hey mira", "he mira", "hey mara", "he mara", "hey mirror", "he mirror",
    "hey miara", "he miara", "hey mia", "he mia", "hey mural", "he mural",
    "hey amira", "hey myra", "he myra", "hay mira", "hai mira", "hey-mira",
    "he-mira", "heymira", "heymara", "hey mirah", "he mirah", "hey meera", "he meera",
    "Amira", "amira", "a mira", "a mirror", "hey miller", "he miller", "hey milla",
    "he milla", "hey mila", "he mila", "hey miwa", "he miwa", "hey mora", "he mora",
    "hey moira", "he moira", "hey miera", "he miera", "hey mura", "he mura",
    "hey maira", "he maira", "hey meara", "he meara", "hey mina", "he mina",
    "hey mirra", "he mirra", "hey mir", "he mir", "hey miro", "he miro",
    "hey miruh", "he miruh", "hey meerah", "he meerah", "hey meira", "he meira",
    "hei mira", "hi mira", "hey mere", "he mere", "hey murra", "he murra",
    "hey mera", "he mera", "hey neera", "he neera", "hey murah", "he murah",
    "hey mear", "he mear", "hey miras", "he miras", "hey miora", "he miora",
    "hey miri", "he miri", "hey maura", "he maura", "hey maya", "he maya",
    "hey moora", "he moora", "hey mihrah", "he mihrah", "ay mira", "ey mira",
    "yay mira", "hey mihra",
]

_PUNCTUATION = re.compile(r"[.,!?;:]")
_WHITESPACE = re.compile(r"\s+")


def normalize(text: Optional[str]) -> str:
    """Lower-case, drop punctuation and collapse whitespace"""
    if not isinstance(text, str):
        return ""
    text = _PUNCTUATION.sub("", text.lower())
    return _WHITESPACE.sub(" ", text).strip()


class WakePhraseMatcher:
    """Tests transcripts against a fixed set of wake phrase variants.

    Matching is plain substring containment on normalised text, so a short
    variant can also match inside an unrelated word ("hey mia" in
    "hey miami").
    """

    def __init__(self, phrases: Optional[Iterable[str]] = None):
        variants: List[str] = []
        for phrase in phrases if phrases is not None else DEFAULT_WAKE_PHRASES:
            cleaned = normalize(phrase)
            if cleaned and cleaned not in variants:
                variants.append(cleaned)
        if not variants:
            raise ValueError("At least one wake phrase is required")
        self.phrases = tuple(variants)
        self._strip_pattern = self._build_strip_pattern(self.phrases)

    @staticmethod
    def _build_strip_pattern(phrases) -> re.Pattern:
        # Longest first so "hey mira" wins over "hey mir" at the same position
        alternatives = []
        for phrase in sorted(phrases, key=len, reverse=True):
            words = [re.escape(word) for word in phrase.split(" ")]
            alternatives.append(r"[\s,.!?;:]*".join(words))
        return re.compile(
            r".*?(?:" + "|".join(alternatives) + r")[\s,.!?;:]*",
            re.IGNORECASE | re.DOTALL,
        )

    normalize = staticmethod(normalize)

    def contains_any(self, normalized_text: str) -> bool:
        return any(phrase in normalized_text for phrase in self.phrases)

    def ends_with_any(self, normalized_text: str) -> bool:
        text = normalized_text.rstrip()
        return any(text.endswith(phrase) for phrase in self.phrases)

    def strip(self, text: str) -> str:
        """Remove everything up to and including the first wake phrase.

        Returns the input unchanged when no variant occurs in it.
        """
        if not isinstance(text, str):
            return ""
        match = self._strip_pattern.match(text)
        if match is None:
            return text
        return text[match.end():].strip()
