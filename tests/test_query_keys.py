from datetime import date

import pytest

from caseload.domain.entities import EntityType
from caseload.remote.base import EQ, GTE, IS_NULL, LTE
from caseload.remote.routes import DASHBOARD_AGGREGATE, has_route, route_for
from caseload.sync import keys
from caseload.sync.keys import KeyPattern, QueryKey, matches


def test_qualifier_order_does_not_matter():
    first = QueryKey.of("interactions_by_range", start="2024-01-01", end="2024-01-31")
    second = QueryKey.of("interactions_by_range", end="2024-01-31", start="2024-01-01")

    assert first == second
    assert hash(first) == hash(second)


def test_none_qualifiers_are_dropped_and_dates_normalised():
    assert keys.invitations() == QueryKey.of(keys.INVITATIONS)
    assert keys.invitations("pending") != keys.invitations()

    key = keys.interactions_by_range(date(2024, 1, 1), date(2024, 1, 31))
    assert key.get("start") == "2024-01-01"
    assert key.get("end") == "2024-01-31"
    assert key == QueryKey.of(keys.INTERACTIONS_BY_RANGE, start="2024-01-01", end="2024-01-31")


def test_filter_descriptor_qualifiers_are_hashable():
    first = QueryKey.of("students", filter={"grade": ["9", "10"], "since": date(2024, 1, 1)})
    second = QueryKey.of("students", filter={"since": date(2024, 1, 1), "grade": ("9", "10")})

    assert first == second
    assert hash(first) == hash(second)
    assert first.get("filter") == (("grade", ("9", "10")), ("since", "2024-01-01"))
    assert KeyPattern.of("students", filter={"grade": ["9", "10"], "since": "2024-01-01"}).matches(first)


def test_search_terms_are_normalised():
    assert keys.student_search("  Ann ") == keys.student_search("ann")
    assert keys.contact_search("Smith") == keys.contact_search("smith ")


def test_string_form():
    assert str(keys.students()) == "students"
    assert str(keys.student("S1")) == "student[id=S1]"
    assert str(keys.every(keys.STUDENT_SEARCH)) == "student_search[*]"


def test_patterns_match_by_tag_and_required_qualifiers():
    all_searches = keys.every(keys.STUDENT_SEARCH)
    assert all_searches.matches(keys.student_search("ann"))
    assert not all_searches.matches(keys.students())

    s1_only = KeyPattern.of(keys.INTERACTIONS_BY_STUDENT, student_id="S1")
    assert matches(s1_only, keys.interactions_by_student("S1"))
    assert not matches(s1_only, keys.interactions_by_student("S2"))

    assert matches(keys.students(), keys.students())
    assert not matches(keys.students(), keys.student("S1"))


def test_sort_key_is_a_total_order():
    unordered = [
        keys.student("S2"),
        keys.students(),
        keys.interactions_by_student("S1"),
        keys.student("S1"),
    ]
    ordered = sorted(unordered, key=QueryKey.sort_key)

    assert ordered == sorted(reversed(unordered), key=QueryKey.sort_key)
    assert ordered.index(keys.student("S1")) < ordered.index(keys.student("S2"))


@pytest.mark.parametrize(
    "key",
    [
        keys.students(),
        keys.student("S1"),
        keys.student_search("ann"),
        keys.contacts(),
        keys.contact("C1"),
        keys.contact_search("lee"),
        keys.interactions(),
        keys.interaction("I1"),
        keys.interactions_by_student("S1"),
        keys.interactions_by_contact("C1"),
        keys.interactions_by_range(date(2024, 1, 1), date(2024, 1, 31)),
        keys.follow_ups(),
        keys.follow_ups_by_student("S1"),
        keys.categories(),
        keys.category("K1"),
        keys.subcategories(),
        keys.subcategories_by_category("K1"),
        keys.dashboard_stats(date(2024, 1, 1), date(2024, 1, 31)),
        keys.invitations(),
        keys.setup_tokens(),
    ],
    ids=str,
)
def test_every_key_builder_has_a_backend_route(key):
    assert has_route(key)
    entity_type, _query = route_for(key)
    assert isinstance(entity_type, EntityType)


def test_unknown_tag_has_no_route():
    with pytest.raises(KeyError):
        route_for(QueryKey.of("nope"))


def test_detail_route_is_single_lookup_by_id():
    entity_type, query = route_for(keys.student("S1"))

    assert entity_type is EntityType.STUDENT
    assert query.single is True
    assert [(f.field, f.op, f.value) for f in query.filters] == [("id", EQ, "S1")]


def test_range_routes_cover_whole_days():
    _entity_type, query = route_for(keys.dashboard_stats(date(2024, 1, 1), date(2024, 1, 31)))

    assert query.aggregate == DASHBOARD_AGGREGATE
    lower, upper = query.filters
    assert (lower.field, lower.op) == ("start_time", GTE)
    assert (upper.field, upper.op) == ("start_time", LTE)
    assert lower.value.isoformat() == "2024-01-01T00:00:00+00:00"
    assert upper.value.date() == date(2024, 1, 31)
    assert query.param("start") == "2024-01-01"


def test_pending_invitations_filter_unaccepted():
    _entity_type, pending = route_for(keys.invitations("pending"))
    _entity_type, everything = route_for(keys.invitations())

    assert [(f.field, f.op) for f in pending.filters] == [("accepted_at", IS_NULL)]
    assert everything.filters == ()
