"""Blocked-word filter for user-supplied names and ticket text"""

import re
from typing import Iterable, List

BLOCKED_WORDS = frozenset({
    # General profanity
    'fuck', 'fucking', 'shit', 'bitch', 'cunt', 'asshole', 'bastard', 'dick', 'cock', 'pussy', 'slut', 'whore',
    # Adult content
    'porn', 'porno', 'xxx', 'nsfw', 'hentai', 'nude', 'nudes', 'naked',
    'sex', 'sexy', 'onlyfans', 'fansly', 'chaturbate', 'pornhub',
    'xvideos', 'xhamster', 'redtube', 'youporn', 'brazzers',
})

_WORD_SPLIT = re.compile(r'[^a-z0-9]+')


def _words(text: str) -> List[str]:
    return [w for w in _WORD_SPLIT.split(text.lower()) if w]


def contains_blocked_content(text: str, extra_words: Iterable[str] = ()) -> bool:
    """True when any whole word of text is on the blocked list"""
    if not text:
        return False
    blocked = BLOCKED_WORDS.union(w.lower() for w in extra_words)
    return any(word in blocked for word in _words(text))


def clean_text(text: str) -> str:
    """Replace blocked words with asterisks, keeping the surrounding text"""
    def _mask(match: re.Match) -> str:
        word = match.group(0)
        return '*' * len(word) if word.lower() in BLOCKED_WORDS else word

    return re.sub(r'[A-Za-z0-9]+', _mask, text)
