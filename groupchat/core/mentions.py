"""@mention extraction and matching.

Two tiers:
- extract_all_mentions: every @token, matched or not (auto-admission input)
- extract_mentions: only tokens naming a current participant (delivery input)

A mention matches a name case-insensitively, either exactly or against the
name with whitespace runs replaced by hyphens, so "@Code-Review" reaches a
participant called "Code Review".
"""

import re
from collections.abc import Iterable

from groupchat.core.models import Participant

# Letters, digits, underscore, period, hyphen (e.g. @my-agent, @RunMaestro.ai)
MENTION_PATTERN = re.compile(r"@([\w.-]+)")

_WHITESPACE = re.compile(r"\s+")


def normalize_mention_name(name: str) -> str:
    """Convert whitespace runs to hyphens for @mention addressing."""
    return _WHITESPACE.sub("-", name)


def mention_matches_name(mentioned: str, actual: str) -> bool:
    """Check whether a mention token addresses the given name."""
    mentioned = mentioned.lower()
    return mentioned == actual.lower() or mentioned == normalize_mention_name(actual).lower()


def extract_all_mentions(text: str) -> list[str]:
    """Return unique @mention tokens (without the @) in order of appearance."""
    mentions: list[str] = []
    for match in MENTION_PATTERN.finditer(text):
        name = match.group(1)
        if name not in mentions:
            mentions.append(name)
    return mentions


def extract_mentions(text: str, participants: Iterable[Participant]) -> list[str]:
    """Return the stored names of participants mentioned in text.

    Unknown mentions are ignored. Each participant appears at most once.
    """
    candidates = list(participants)
    mentions: list[str] = []
    for token in extract_all_mentions(text):
        for participant in candidates:
            if mention_matches_name(token, participant.name):
                if participant.name not in mentions:
                    mentions.append(participant.name)
                break
    return mentions


def find_matching_name(mentioned: str, names: Iterable[str]) -> str | None:
    """Return the first name the mention addresses, if any."""
    for name in names:
        if mention_matches_name(mentioned, name):
            return name
    return None
