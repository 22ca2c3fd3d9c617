"""Tests for fan-out grouping and the weekly report."""

from main import ProjectTagOut, TrackedEventOut, format_duration, group_events_by_tag, summarize_groups


def event(event_id, tags, duration):
    return TrackedEventOut(
        id=event_id,
        summary=event_id,
        duration=duration,
        project_tags=[ProjectTagOut(tag=t) for t in tags],
    )


def totals(groups):
    return {g.tag: g.total_minutes for g in groups}


def test_event_with_two_tags_counts_in_both_groups():
    groups = group_events_by_tag([event("e1", ["a", "b"], 30)])
    assert totals(groups) == {"a": 30, "b": 30}
    assert summarize_groups(groups) == 60


def test_groups_keep_first_seen_order_and_sum():
    events = [event("e1", ["b"], 15), event("e2", ["a", "b"], 45), event("e3", ["a"], 60)]
    groups = group_events_by_tag(events)
    assert [g.tag for g in groups] == ["b", "a"]
    assert totals(groups) == {"b": 60, "a": 105}
    assert [e.id for e in groups[0].events] == ["e1", "e2"]
    assert groups[1].total_formatted == "1h 45m"


def test_selected_tags_limit_groups():
    events = [event("e1", ["a", "b"], 30), event("e2", ["c"], 10)]
    assert totals(group_events_by_tag(events, ["b", "c"])) == {"b": 30, "c": 10}
    assert group_events_by_tag(events, []) == []


def test_unknown_duration_counts_as_zero():
    assert totals(group_events_by_tag([event("e1", ["a"], None), event("e2", ["a"], 20)])) == {"a": 20}


def test_repeated_tag_on_one_event_counts_once():
    assert totals(group_events_by_tag([event("e1", ["a", "a"], 30)])) == {"a": 30}


def test_untagged_events_form_no_group():
    assert group_events_by_tag([event("e1", [], 30)]) == []


def test_format_duration():
    assert format_duration(0) == "0h 0m"
    assert format_duration(None) == "0h 0m"
    assert format_duration(135) == "2h 15m"
    assert format_duration(-30) == "-0h 30m"
    assert format_duration(-90) == "-1h 30m"
