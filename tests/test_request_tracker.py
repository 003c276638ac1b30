"""
Unit tests for RequestTracker
"""

import pytest

from pitch_bridge.request_tracker import DuplicateRequestError, RequestTracker


class TestRegistration:
    """Test the one-entry-per-key invariant"""

    def test_register_and_lookup(self, make_request):
        tracker = RequestTracker()
        request = make_request("/music/song.wav")

        assert tracker.register(request) is None
        assert tracker.lookup("/music/song.wav") is request
        assert len(tracker) == 1
        assert "/music/song.wav" in tracker

    def test_duplicate_live_key_rejected_without_touching_first(self, make_request):
        """GIVEN a live entry for a key
        WHEN the same key is registered again
        THEN registration fails and the first entry is unchanged"""
        tracker = RequestTracker(stale_after=20.0)
        first = make_request("/music/song.wav", submitted_at=100.0, request_id=1)
        second = make_request("/music/song.wav", submitted_at=105.0, request_id=2)
        tracker.register(first, now=100.0)

        with pytest.raises(DuplicateRequestError) as exc_info:
            tracker.register(second, now=105.0)

        assert exc_info.value.key == "/music/song.wav"
        assert tracker.lookup("/music/song.wav") is first
        assert len(tracker) == 1

    def test_stale_entry_is_displaced(self, make_request):
        tracker = RequestTracker(stale_after=20.0)
        old = make_request("/music/song.wav", submitted_at=0.0, cleanup_target="/tmp/x.proc.wav")
        new = make_request("/music/song.wav", submitted_at=30.0)
        tracker.register(old, now=0.0)

        displaced = tracker.register(new, now=30.0)

        assert displaced is old
        assert tracker.lookup("/music/song.wav") is new


class TestRemoval:
    """Test remove/clear semantics"""

    def test_remove_is_idempotent(self, make_request):
        tracker = RequestTracker()
        request = make_request("/a.wav")
        tracker.register(request)

        assert tracker.remove("/a.wav") is request
        assert tracker.remove("/a.wav") is None
        assert len(tracker) == 0

    def test_clear_all_returns_removed_entries(self, make_request):
        tracker = RequestTracker()
        for i in range(3):
            tracker.register(make_request(f"/in/{i}.wav"))

        cleared = tracker.clear_all()

        assert len(cleared) == 3
        assert len(tracker) == 0

    def test_tracker_never_deletes_files(self, tmp_path, make_request):
        temp_file = tmp_path / "a.proc.wav"
        temp_file.write_bytes(b"RIFF")
        tracker = RequestTracker()
        tracker.register(make_request(str(temp_file), cleanup_target=str(temp_file)))

        tracker.remove(str(temp_file))
        tracker.clear_all()

        assert temp_file.exists()


class TestQueries:
    """Test read-only queries"""

    def test_find_by_base_name_first_match_wins(self, make_request):
        tracker = RequestTracker()
        first = make_request("/one/track.proc.wav", original_base_name="track")
        second = make_request("/two/track.proc.wav", original_base_name="track")
        tracker.register(first)
        tracker.register(second)

        assert tracker.find_by_base_name("track") is first
        assert tracker.find_by_base_name("other") is None

    def test_stale_entries(self, make_request):
        tracker = RequestTracker(stale_after=20.0)
        tracker.register(make_request("/old.wav", submitted_at=0.0), now=0.0)
        tracker.register(make_request("/new.wav", submitted_at=15.0), now=15.0)

        stale = tracker.stale_entries(now=25.0)

        assert [entry.key for entry in stale] == ["/old.wav"]
        assert tracker.is_live("/new.wav", now=25.0)
        assert not tracker.is_live("/old.wav", now=25.0)

    def test_elapsed_ms(self, make_request):
        request = make_request("/a.wav", submitted_at=10.0)
        assert request.elapsed_ms(now=12.5) == 2500
        assert request.age(now=5.0) == 0.0
