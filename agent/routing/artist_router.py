"""
Artist routing - decides which provider a lead is steered to.

Precedence (first hit wins, and nothing runs once inquired_technician is set):

1. ``tech:<name>`` contact tag, stamped by the landing page's ``?tech=`` link
2. A provider named in the latest message ("can I book with Joan?")
3. Tattoo style matched against each provider's ``styles``

Only an unambiguous pick is written back. Several style matches, or none,
leave the field empty so the booking engine's workload ranking decides.
"""

import logging
import re
from dataclasses import dataclass
from typing import Any

from agent.state import field_keys as fk
from agent.state.canonical_state import CanonicalState
from shared.config import StaffMember

logger = logging.getLogger(__name__)

TECH_TAG_PREFIX = "tech:"

SOURCE_TAG = "tag"
SOURCE_MENTION = "mention"
SOURCE_STYLE = "style"


@dataclass
class ArtistDecision:
    provider: StaffMember
    source: str

    @property
    def field_updates(self) -> dict[str, Any]:
        return {fk.INQUIRED_TECHNICIAN: self.provider.name}


def provider_named(name: str | None, providers: list[StaffMember]) -> StaffMember | None:
    """Provider whose name appears in ``name`` ("Joan R." -> Joan)."""
    lowered = (name or "").strip().lower()
    if not lowered:
        return None
    for provider in providers:
        if provider.name.strip().lower() in lowered:
            return provider
    return None


def tag_preference(contact: dict[str, Any] | None, providers: list[StaffMember]) -> StaffMember | None:
    for tag in (contact or {}).get("tags") or []:
        if isinstance(tag, str) and tag.lower().startswith(TECH_TAG_PREFIX):
            provider = provider_named(tag[len(TECH_TAG_PREFIX):], providers)
            if provider:
                return provider
    return None


def detect_artist_mention(text: str | None, providers: list[StaffMember]) -> StaffMember | None:
    """First provider the message refers to by name, possessive included."""
    lowered = (text or "").lower()
    if not lowered:
        return None
    for provider in providers:
        name = re.escape(provider.name.strip().lower())
        if re.search(rf"\b{name}(?:'?s)?\b", lowered):
            return provider
    return None


def providers_for_style(style: str | None, providers: list[StaffMember]) -> list[StaffMember]:
    """
    Providers whose styles cover ``style``.

    Exact matches win; otherwise either string containing the other counts
    ("black and grey realism" -> realism).
    """
    wanted = (style or "").strip().lower()
    if not wanted:
        return []

    styles_by_provider = [
        (p, {s.strip().lower() for s in p.styles if s.strip()}) for p in providers
    ]
    exact = [p for p, styles in styles_by_provider if wanted in styles]
    if exact:
        return exact
    return [
        p
        for p, styles in styles_by_provider
        if any(s in wanted or wanted in s for s in styles)
    ]


def route_artist(
    contact: dict[str, Any] | None,
    state: CanonicalState,
    text: str | None,
    providers: list[StaffMember],
) -> ArtistDecision | None:
    """
    Pick a provider for a lead that has none on file.

    Args:
        contact: CRM contact record (tags are read from it)
        state: Canonical state for the contact
        text: Latest inbound message
        providers: Provider roster in tie-break order

    Returns:
        ArtistDecision, or None when a provider is already set or no single
        provider stands out
    """
    if state.inquired_technician or not providers:
        return None

    provider = tag_preference(contact, providers)
    if provider:
        return ArtistDecision(provider=provider, source=SOURCE_TAG)

    provider = detect_artist_mention(text, providers)
    if provider:
        return ArtistDecision(provider=provider, source=SOURCE_MENTION)

    candidates = providers_for_style(state.tattoo_style, providers)
    if len(candidates) == 1:
        return ArtistDecision(provider=candidates[0], source=SOURCE_STYLE)
    if candidates:
        logger.debug(
            f"Style matches several artists, leaving to workload ranking | "
            f"style={state.tattoo_style} | candidates={[p.name for p in candidates]}"
        )
    return None
