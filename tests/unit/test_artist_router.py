"""
Unit tests for artist_router.py - which provider a lead is steered to.

Coverage:
- tech:<name> tag wins over a mention and a style match
- Name mentions, possessives included, word boundaries respected
- Style matching: exact first, then containment either way
- Ambiguous or unknown styles leave the choice open
- Existing inquired_technician is never overwritten
"""

import pytest

from agent.routing.artist_router import (
    SOURCE_MENTION,
    SOURCE_STYLE,
    SOURCE_TAG,
    detect_artist_mention,
    provider_named,
    providers_for_style,
    route_artist,
)
from agent.state import field_keys as fk
from agent.state.canonical_state import build_canonical_state
from shared.config import StaffMember, get_settings


@pytest.fixture
def providers():
    return [
        StaffMember(name="Joan", styles=["realism", "black and grey"]),
        StaffMember(name="Andrew", styles=["fine line", "traditional"]),
    ]


# ============================================================================
# Helpers
# ============================================================================


class TestProviderNamed:
    def test_name_with_suffix(self, providers):
        assert provider_named("Joan R.", providers).name == "Joan"

    def test_unknown_name(self, providers):
        assert provider_named("Sam", providers) is None

    def test_empty(self, providers):
        assert provider_named("  ", providers) is None


class TestDetectArtistMention:
    @pytest.mark.parametrize(
        "text",
        ["can I book with Andrew?", "I loved andrew's fine line work", "is ANDREW around"],
    )
    def test_mentions(self, providers, text):
        assert detect_artist_mention(text, providers).name == "Andrew"

    def test_name_inside_another_word_is_ignored(self, providers):
        assert detect_artist_mention("my friend joanna recommended you", providers) is None

    def test_no_text(self, providers):
        assert detect_artist_mention(None, providers) is None


class TestProvidersForStyle:
    def test_exact_match(self, providers):
        assert [p.name for p in providers_for_style("Fine Line", providers)] == ["Andrew"]

    def test_longer_style_contains_known_one(self, providers):
        assert [p.name for p in providers_for_style("black and grey realism", providers)] == ["Joan"]

    def test_unknown_style(self, providers):
        assert providers_for_style("watercolor", providers) == []

    def test_several_matches_in_roster_order(self):
        roster = [
            StaffMember(name="Joan", styles=["realism"]),
            StaffMember(name="Andrew", styles=["realism"]),
        ]
        assert [p.name for p in providers_for_style("realism", roster)] == ["Joan", "Andrew"]


# ============================================================================
# route_artist
# ============================================================================


class TestRouteArtist:
    def test_tag_wins(self, providers, make_contact):
        contact = make_contact({fk.TATTOO_STYLE: "realism"}, tags=["lead", "tech:Andrew"])
        state = build_canonical_state(contact["customFields"])

        decision = route_artist(contact, state, "is Joan free?", providers)

        assert decision.provider.name == "Andrew"
        assert decision.source == SOURCE_TAG
        assert decision.field_updates == {fk.INQUIRED_TECHNICIAN: "Andrew"}

    def test_mention_beats_style(self, providers, make_contact):
        contact = make_contact({fk.TATTOO_STYLE: "realism"})
        state = build_canonical_state(contact["customFields"])

        decision = route_artist(contact, state, "I'd like Andrew please", providers)

        assert decision.provider.name == "Andrew"
        assert decision.source == SOURCE_MENTION

    def test_style_routes_single_match(self, providers, make_contact):
        contact = make_contact({fk.TATTOO_STYLE: "traditional"})
        state = build_canonical_state(contact["customFields"])

        decision = route_artist(contact, state, "hi", providers)

        assert decision.provider.name == "Andrew"
        assert decision.source == SOURCE_STYLE

    def test_ambiguous_style_left_open(self, make_contact):
        contact = make_contact({fk.TATTOO_STYLE: "realism"})
        state = build_canonical_state(contact["customFields"])

        # Joan and Andrew both list realism in the test roster
        assert route_artist(contact, state, "hi", get_settings().PROVIDERS) is None

    def test_existing_preference_kept(self, providers, make_contact):
        contact = make_contact({fk.INQUIRED_TECHNICIAN: "Joan"}, tags=["tech:Andrew"])
        state = build_canonical_state(contact["customFields"])

        assert route_artist(contact, state, "Andrew?", providers) is None

    def test_nothing_to_go_on(self, providers, make_contact):
        contact = make_contact({})
        state = build_canonical_state({})

        assert route_artist(contact, state, "hello", providers) is None

    def test_empty_roster(self, make_contact):
        contact = make_contact({}, tags=["tech:Joan"])

        assert route_artist(contact, build_canonical_state({}), "hi", []) is None
