"""Tests for lane construction, card building and sorting."""

from __future__ import annotations

import pytest

from laneboard.fields import FieldResolver
from laneboard.lanes import (
    BLANK_KEY,
    PARENT_BADGE_API_NAME,
    FieldComparator,
    LaneBuildOptions,
    build_card,
    build_lanes,
    compare_sort_values,
    declared_lanes_for,
    sort_records,
)
from laneboard.models import Record, SortDirection
from laneboard.summaries import parse_summary_definitions, validate_summary_definitions
from tests.factories import make_record


@pytest.fixture
def options(resolver: FieldResolver) -> LaneBuildOptions:
    """Options for an opportunity board grouped by stage."""
    return LaneBuildOptions(
        grouping_field="Opportunity.StageName",
        resolver=resolver,
        card_fields=["Opportunity.Name", "Opportunity.Amount"],
        declared_lanes=declared_lanes_for(resolver, "Opportunity.StageName"),
        grouping_optional=True,
    )


def _ids(records: list[Record]) -> list[str]:
    return [record.id for record in records]


class TestDeclaredLanes:
    """Tests for lanes declared by enumeration metadata."""

    def test_active_values_in_order(self, resolver: FieldResolver):
        """Inactive values are skipped; labels come from metadata."""
        declared = declared_lanes_for(resolver, "Opportunity.StageName")
        assert [d.key for d in declared] == ["Prospecting", "Negotiation", "Closed Won"]
        assert declared[1].label == "Negotiation/Review"

    def test_no_metadata(self):
        """Without metadata nothing is declared."""
        assert declared_lanes_for(FieldResolver("Opportunity"), "Opportunity.StageName") == []


class TestBuildLanes:
    """Tests for partitioning records into lanes."""

    def test_lane_order(self, opportunity_records, options):
        """Declared lanes first, then the blank lane, then the rest by label."""
        result = build_lanes(opportunity_records, options)
        assert [lane.key for lane in result.lanes] == [
            "Prospecting",
            "Negotiation",
            "Closed Won",
            BLANK_KEY,
            "Legacy Stage",
        ]

    def test_every_included_record_in_exactly_one_lane(self, opportunity_records, options):
        """Cards partition the record set."""
        result = build_lanes(opportunity_records, options)
        card_ids = [card.id for lane in result.lanes for card in lane.cards]
        assert sorted(card_ids) == sorted(_ids(opportunity_records))

    def test_blank_lane_label(self, opportunity_records, options):
        """Records without a grouping value land in the blank lane."""
        options.blank_label = "Unassigned"
        blank = next(lane for lane in build_lanes(opportunity_records, options).lanes if lane.key == BLANK_KEY)
        assert blank.label == "Unassigned"
        assert blank.raw_value is None
        assert [card.id for card in blank.cards] == ["006E"]

    def test_empty_blank_lane_only_when_optional(self, options):
        """The empty blank lane is shown only when grouping is optional."""
        records = [make_record("1", Name="A", StageName="Prospecting")]
        assert BLANK_KEY in [lane.key for lane in build_lanes(records, options).lanes]
        options.grouping_optional = False
        assert BLANK_KEY not in [lane.key for lane in build_lanes(records, options).lanes]

    def test_declared_lanes_present_when_empty(self, options):
        """Declared lanes appear even with no records."""
        lanes = build_lanes([], options).lanes
        assert [lane.key for lane in lanes][:3] == ["Prospecting", "Negotiation", "Closed Won"]
        assert all(lane.count == 0 for lane in lanes)

    def test_undeclared_lanes_sorted_by_label(self, resolver: FieldResolver):
        """Without metadata lanes follow their labels case-insensitively."""
        plain = FieldResolver("Opportunity")
        records = [
            make_record("1", StageName="beta"),
            make_record("2", StageName="Alpha"),
            make_record("3", StageName="Gamma"),
        ]
        options = LaneBuildOptions(grouping_field="Opportunity.StageName", resolver=plain)
        assert [lane.key for lane in build_lanes(records, options).lanes] == ["Alpha", "beta", "Gamma"]

    def test_record_filter(self, opportunity_records, options):
        """Excluded records produce no cards."""
        options.is_record_included = lambda record: record.id != "006A"
        cards = [card.id for lane in build_lanes(opportunity_records, options).lanes for card in lane.cards]
        assert "006A" not in cards

    def test_without_grouping_field(self, opportunity_records, resolver):
        """No grouping field builds no lanes."""
        assert build_lanes(opportunity_records, LaneBuildOptions(grouping_field=None, resolver=resolver)).lanes == []

    def test_summaries_and_warnings(self, resolver: FieldResolver, options):
        """Each lane carries its own summaries and warnings."""
        definitions, _ = parse_summary_definitions("Amount|SUM|Total")
        options.summary_definitions, _ = validate_summary_definitions(definitions, resolver)
        records = [
            make_record("1", Name="A", StageName="Prospecting", Amount=10, CurrencyIsoCode="EUR"),
            make_record("2", Name="B", StageName="Prospecting", Amount=5, CurrencyIsoCode="USD"),
            make_record("3", Name="C", StageName="Negotiation", Amount=7),
        ]
        result = build_lanes(records, options)
        lanes = {lane.key: lane for lane in result.lanes}
        assert lanes["Prospecting"].summaries[0].value == "Mixed currencies"
        assert lanes["Negotiation"].summaries[0].value == "$7.00"
        assert len(result.warnings) == 1


class TestBuildCard:
    """Tests for card view-models."""

    def test_title_and_details(self, resolver: FieldResolver, options):
        """The first field is the title; the rest are labelled details."""
        card = build_card(make_record("1", Name="Acme", Amount=1000), options, options.card_fields)
        assert card.title == "Acme"
        assert card.details[0].label == "Amount"
        assert card.details[0].value == "$1,000.00"
        assert card.details[0].api_name == "Amount"

    def test_missing_values_use_placeholder(self, options):
        """Empty fields render the placeholder."""
        card = build_card(make_record("1"), options, options.card_fields)
        assert card.title == "--"
        assert card.details[0].value == "--"

    def test_icons(self, options):
        """Icons align with card fields; emoji entries win."""
        options.card_field_icons = ["U+1F525", "moneybag"]
        card = build_card(make_record("1", Name="A", Amount=1), options, options.card_fields)
        assert card.title_emoji == "\U0001F525"
        assert card.title_icon is None
        assert card.details[0].icon_name == "utility:moneybag"

    def test_hidden_field_labels(self, options):
        options.show_field_labels = False
        card = build_card(make_record("1", Name="A", Amount=1), options, options.card_fields)
        assert card.details[0].label == ""
        assert card.details[0].value == "$1.00"

    def test_parent_badge(self, options):
        """The parent badge is appended when enabled."""
        options.show_parent_badge = True
        options.parent_badge_label = "Parent Account"
        card = build_card(make_record("1", parent="001X", Name="A"), options, options.card_fields)
        badge = card.details[-1]
        assert badge.api_name == PARENT_BADGE_API_NAME
        assert badge.is_parent_badge is True
        assert (badge.label, badge.value) == ("Parent Account", "Account 001X")

    def test_record_url(self, options):
        """The record link comes from the options callback."""
        options.record_url = lambda record: f"/r/{record.id}"
        assert build_card(make_record("1", Name="A"), options, options.card_fields).record_url == "/r/1"


class TestSorting:
    """Tests for card ordering inside a lane."""

    def test_compare_sort_values(self):
        """Numbers numerically, text case-insensitively."""
        assert compare_sort_values(2, 10) < 0
        assert compare_sort_values("b", "A") > 0
        assert compare_sort_values("a", "A") == 0

    def test_ascending_with_empties_last(self, resolver: FieldResolver):
        """Empty values sort last."""
        records = [make_record("1", Amount=None), make_record("2", Amount=5), make_record("3", Amount=1)]
        assert _ids(sort_records(records, resolver, "Opportunity.Amount")) == ["3", "2", "1"]

    def test_descending_keeps_empties_last(self, resolver: FieldResolver):
        """Direction reverses values but never moves empties first."""
        records = [make_record("1", Amount=None), make_record("2", Amount=5), make_record("3", Amount=1)]
        result = sort_records(records, resolver, "Opportunity.Amount", direction=SortDirection.DESC)
        assert _ids(result) == ["2", "3", "1"]

    def test_fallback_is_always_ascending(self, resolver: FieldResolver):
        """Ties on the primary field are broken by the fallback ascending."""
        records = [
            make_record("1", Amount=5, Name="b"),
            make_record("2", Amount=5, Name="a"),
            make_record("3", Amount=9, Name="c"),
        ]
        result = sort_records(
            records, resolver, "Opportunity.Amount", "Opportunity.Name", SortDirection.DESC
        )
        assert _ids(result) == ["3", "2", "1"]

    def test_enumeration_order(self, resolver: FieldResolver):
        """Enumeration fields sort by declared order, unlisted values last."""
        records = [
            make_record("1", StageName="Closed Won"),
            make_record("2", StageName="Zeta"),
            make_record("3", StageName="Prospecting"),
        ]
        assert _ids(sort_records(records, resolver, "Opportunity.StageName")) == ["3", "1", "2"]

    def test_comparator_descending(self, resolver: FieldResolver):
        """The comparator negates non-empty comparisons only."""
        comparator = FieldComparator("Opportunity.Amount", resolver, descending=True)
        assert comparator(make_record("1", Amount=1), make_record("2", Amount=2)) > 0
        assert comparator(make_record("1"), make_record("2", Amount=2)) > 0

    def test_stable_without_sort_field(self, resolver: FieldResolver):
        """No sort field keeps the input order."""
        records = [make_record("2"), make_record("1")]
        assert _ids(sort_records(records, resolver, None)) == ["2", "1"]

    def test_lane_cards_sorted(self, opportunity_records, options):
        """Cards fall back to the title field when no sort is chosen."""
        lanes = {lane.key: lane for lane in build_lanes(opportunity_records, options).lanes}
        assert [card.title for card in lanes["Prospecting"].cards] == ["Acme", "Globex"]
        options.sort_field = "Opportunity.Amount"
        lanes = {lane.key: lane for lane in build_lanes(opportunity_records, options).lanes}
        assert [card.id for card in lanes["Prospecting"].cards] == ["006B", "006A"]
