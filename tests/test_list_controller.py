from __future__ import annotations

import logging

from pebble_core import DEBOUNCE_MS, MODE_PREFIX, MODE_SUBSTRING, ListController, StatsRecord

from conftest import FakeTransport, ManualScheduler, keys_payload


def _keys_requests(transport: FakeTransport) -> list:
    return [url for url in transport.urls if "/api/keys" in url]


def test_start_fetches_stats_and_first_page(list_ctrl: ListController, transport: FakeTransport) -> None:
    list_ctrl.start()
    assert any(url.endswith("/api/stats") for url in transport.urls)
    assert _keys_requests(transport) == [
        "http://pebble.test:8080/api/keys?q=&mode=prefix&offset=0&limit=50",
    ]


def test_rapid_typing_issues_one_fetch_for_final_text(
    list_ctrl: ListController, transport: FakeTransport, scheduler: ManualScheduler,
) -> None:
    list_ctrl.search_text_changed("user:")
    scheduler.advance(100)
    list_ctrl.search_text_changed("user:1")
    assert _keys_requests(transport) == []
    assert scheduler.pending_count == 1

    scheduler.advance(DEBOUNCE_MS - 1)
    assert _keys_requests(transport) == []

    scheduler.advance(1)
    assert _keys_requests(transport) == [
        "http://pebble.test:8080/api/keys?q=user%3A1&mode=prefix&offset=0&limit=50",
    ]
    scheduler.advance(5000)
    assert len(_keys_requests(transport)) == 1


def test_mode_change_fetches_immediately_and_drops_pending_debounce(
    list_ctrl: ListController, transport: FakeTransport, scheduler: ManualScheduler,
) -> None:
    list_ctrl.search_text_changed("ord")
    list_ctrl.search_mode_changed(MODE_SUBSTRING)

    assert _keys_requests(transport) == [
        "http://pebble.test:8080/api/keys?q=ord&mode=substring&offset=0&limit=50",
    ]
    scheduler.advance(1000)
    assert len(_keys_requests(transport)) == 1


def test_substring_warning_only_on_first_selection(list_ctrl: ListController) -> None:
    assert list_ctrl.search_mode_changed(MODE_SUBSTRING) is True
    assert list_ctrl.search_mode_changed(MODE_PREFIX) is False
    assert list_ctrl.search_mode_changed(MODE_SUBSTRING) is False


def test_late_older_response_does_not_overwrite_newer(
    list_ctrl: ListController, transport: FakeTransport,
) -> None:
    list_ctrl.fetch_keys()          # A
    list_ctrl.search_mode_changed(MODE_SUBSTRING)  # B

    transport.respond(transport.find("mode=substring"), keys_payload(["b1", "b2"]))
    transport.respond(transport.find("mode=prefix"), keys_payload(["a1"]))

    assert list_ctrl.keys == ("b1", "b2")
    assert list_ctrl.state.total_count == 2


def test_stale_response_does_not_notify_listeners(
    list_ctrl: ListController, transport: FakeTransport,
) -> None:
    seen = []
    list_ctrl.on_keys.append(lambda ctrl: seen.append(ctrl.keys))
    list_ctrl.fetch_keys()
    list_ctrl.fetch_keys()

    transport.respond(0, keys_payload(["old"]))
    transport.respond(0, keys_payload(["new"]))

    assert seen == [("new",)]


def test_failed_fetch_keeps_previous_list(
    list_ctrl: ListController, transport: FakeTransport, caplog,
) -> None:
    list_ctrl.fetch_keys()
    transport.respond(0, keys_payload(["k1", "k2"], total=2))

    list_ctrl.refresh()
    with caplog.at_level(logging.WARNING, logger="pebble_core"):
        transport.fail(transport.find("/api/keys"))
        transport.respond(transport.find("/api/stats"), b"garbage")

    assert list_ctrl.keys == ("k1", "k2")
    assert list_ctrl.stats is None
    assert "Failed to fetch keys" in caplog.text
    assert "Failed to fetch stats" in caplog.text


def test_stale_failure_is_ignored(list_ctrl: ListController, transport: FakeTransport, caplog) -> None:
    list_ctrl.fetch_keys()
    list_ctrl.fetch_keys()
    with caplog.at_level(logging.WARNING, logger="pebble_core"):
        transport.fail(0)
    assert "Failed to fetch keys" not in caplog.text
    transport.respond(0, keys_payload(["fresh"]))
    assert list_ctrl.keys == ("fresh",)


def test_paging_fetches_requested_offset(list_ctrl: ListController, transport: FakeTransport) -> None:
    list_ctrl.fetch_keys()
    transport.respond(0, keys_payload(["k"] * 50, total=120))

    assert list_ctrl.next_page() is True
    assert transport.urls[-1].endswith("offset=50&limit=50")
    transport.respond(0, keys_payload(["k"] * 50, total=120, offset=50))

    assert list_ctrl.next_page() is True
    transport.respond(0, keys_payload(["k"] * 20, total=120, offset=100))
    requests_before = len(transport.urls)
    assert list_ctrl.next_page() is False
    assert len(transport.urls) == requests_before

    assert list_ctrl.prev_page() is True
    assert transport.urls[-1].endswith("offset=50&limit=50")


def test_prev_page_on_first_page_issues_nothing(list_ctrl: ListController, transport: FakeTransport) -> None:
    assert list_ctrl.prev_page() is False
    assert transport.urls == []


def test_refresh_refetches_current_page(list_ctrl: ListController, transport: FakeTransport) -> None:
    list_ctrl.fetch_keys()
    transport.respond(0, keys_payload(["k"] * 50, total=200))
    list_ctrl.next_page()
    transport.respond(0, keys_payload(["k"] * 50, total=200, offset=50))

    list_ctrl.refresh()

    assert transport.urls[-2].endswith("/api/stats")
    assert transport.urls[-1].endswith("offset=50&limit=50")


def test_refresh_during_debounce_cancels_pending_fetch(
    list_ctrl: ListController, transport: FakeTransport, scheduler: ManualScheduler,
) -> None:
    list_ctrl.search_text_changed("abc")
    list_ctrl.refresh()
    scheduler.advance(1000)
    assert _keys_requests(transport) == [
        "http://pebble.test:8080/api/keys?q=abc&mode=prefix&offset=0&limit=50",
    ]


def test_typing_resets_page(list_ctrl: ListController, transport: FakeTransport, scheduler: ManualScheduler) -> None:
    list_ctrl.fetch_keys()
    transport.respond(0, keys_payload(["k"] * 50, total=500))
    list_ctrl.next_page()
    assert list_ctrl.state.offset == 50

    list_ctrl.search_text_changed("x")
    assert list_ctrl.state.offset == 0
    scheduler.advance(DEBOUNCE_MS)
    assert transport.urls[-1].endswith("q=x&mode=prefix&offset=0&limit=50")


def test_stats_applied_independently_of_list(list_ctrl: ListController, transport: FakeTransport) -> None:
    stats_seen = []
    list_ctrl.on_stats.append(lambda ctrl: stats_seen.append(ctrl.stats))
    list_ctrl.start()
    transport.respond(transport.find("/api/stats"), {"db_path": "/db", "total_keys": 9000})

    assert stats_seen == [StatsRecord(db_path="/db", total_keys=9000)]
    assert list_ctrl.state.total_count == 0

    transport.respond(transport.find("/api/keys"), keys_payload(["a"], total=1))
    assert list_ctrl.state.total_count == 1


def test_session_is_shared_across_controllers(client, scheduler, session) -> None:
    first = ListController(client, scheduler, session)
    second = ListController(client, scheduler, session)
    assert first.search_mode_changed(MODE_SUBSTRING) is True
    assert second.search_mode_changed(MODE_SUBSTRING) is False


def test_shrinking_total_refetches_last_page(list_ctrl: ListController, transport: FakeTransport) -> None:
    seen = []
    list_ctrl.on_keys.append(lambda ctrl: seen.append((ctrl.result.offset, ctrl.state.offset)))
    list_ctrl.fetch_keys()
    transport.respond(0, keys_payload(["k"] * 50, total=150))
    list_ctrl.next_page()
    transport.respond(0, keys_payload(["k"] * 50, total=150, offset=50))
    list_ctrl.next_page()
    transport.respond(0, keys_payload(["k"] * 50, total=150, offset=100))

    list_ctrl.refresh()
    transport.respond(transport.find("/api/keys"), keys_payload([], total=60, offset=100))

    assert transport.urls[-1].endswith("offset=50&limit=50")
    assert seen[-1] == (100, 100)
    transport.respond(transport.find("/api/keys"), keys_payload(["k"] * 10, total=60, offset=50))

    assert list_ctrl.result.offset == list_ctrl.state.offset == 50
    assert seen[-1] == (50, 50)
    assert [url for url, _cb in transport.pending if "/api/keys" in url] == []


def test_restart_goes_back_to_first_page(list_ctrl: ListController, transport: FakeTransport) -> None:
    list_ctrl.search_mode_changed(MODE_SUBSTRING)
    transport.respond(0, keys_payload(["k"] * 50, total=300))
    list_ctrl.next_page()
    list_ctrl.next_page()
    assert list_ctrl.state.offset == 100

    list_ctrl.restart()

    assert transport.urls[-2].endswith("/api/stats")
    assert transport.urls[-1].endswith("q=&mode=substring&offset=0&limit=50")
