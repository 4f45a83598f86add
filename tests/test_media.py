"""Tests for the media negotiation coordinator and candidate handling."""

import asyncio

import pytest

from telehealth_rtc.core.errors import MediaAccessDenied, NegotiationError
from telehealth_rtc.core.media import (
    LocalMedia,
    candidate_to_payload,
    parse_description,
    parse_remote_candidate,
)
from telehealth_rtc.core.signaling import CallKind

from conftest import FAKE_ANSWER, FAKE_OFFER, CoordinatorFactory, FakeMediaSource, FakeTrack, candidate


@pytest.fixture
def factory():
    return CoordinatorFactory()


class TestCandidateParsing:
    def test_browser_candidate(self):
        parsed = parse_remote_candidate(candidate(5000))

        assert parsed.ip == "192.168.1.2"
        assert parsed.port == 5000
        assert parsed.type == "host"
        assert parsed.sdpMid == "0"
        assert parsed.sdpMLineIndex == 0

    def test_end_of_candidates(self):
        assert parse_remote_candidate({"candidate": "", "sdpMid": "0"}) is None
        assert parse_remote_candidate(None) is None

    def test_malformed_candidate(self):
        with pytest.raises(ValueError):
            parse_remote_candidate({"candidate": "candidate:garbage"})

    def test_payload_round_trip_keeps_prefix(self):
        payload = candidate_to_payload(parse_remote_candidate(candidate(5000)))
        assert payload["candidate"].startswith("candidate:1 1 ")
        assert payload["sdpMLineIndex"] == 0


class TestDescriptions:
    def test_valid_description(self):
        assert parse_description(FAKE_ANSWER).type == "answer"

    @pytest.mark.parametrize("bad", [None, "sdp", {"type": "answer"}, {"type": "bogus", "sdp": "v=0"}])
    def test_malformed_description(self, bad):
        with pytest.raises(NegotiationError):
            parse_description(bad)


class TestCoordinator:
    async def test_offer_after_media(self, factory):
        coordinator = factory("c1")

        media = await coordinator.acquire_local_media(CallKind.VIDEO)
        offer = await coordinator.create_offer()

        assert media.kinds == {"audio", "video"}
        assert len(factory.peer.senders) == 2
        assert offer["type"] == "offer"
        assert coordinator.local_description_set

    async def test_media_denied_propagates(self):
        factory = CoordinatorFactory(FakeMediaSource(deny=True))
        coordinator = factory("c1")

        with pytest.raises(MediaAccessDenied):
            await coordinator.acquire_local_media(CallKind.VOICE)

    async def test_candidates_queued_until_remote_description(self, factory):
        coordinator = factory("c1")
        await coordinator.acquire_local_media(CallKind.VOICE)
        await coordinator.create_offer()

        await coordinator.add_remote_candidate(candidate(5001))
        await coordinator.add_remote_candidate(candidate(5002))
        assert factory.peer.candidates == []
        assert len(coordinator.pending) == 2

        await coordinator.set_remote_description(FAKE_ANSWER)
        await coordinator.add_remote_candidate(candidate(5003))

        assert factory.peer.ports == [5001, 5002, 5003]
        assert factory.peer.log[0] == "remote-description"
        assert len(coordinator.pending) == 0

    async def test_candidate_arriving_mid_drain_keeps_order(self, factory):
        coordinator = factory("c1")
        await coordinator.add_remote_candidate(candidate(5001))
        await coordinator.add_remote_candidate(candidate(5002))
        pc = coordinator._peer()

        real_add = pc.addIceCandidate

        async def slow_add(ice_candidate):
            await asyncio.sleep(0.01)
            await real_add(ice_candidate)

        pc.addIceCandidate = slow_add

        drain = asyncio.ensure_future(coordinator.set_remote_description(FAKE_OFFER))
        await asyncio.sleep(0.005)
        await coordinator.add_remote_candidate(candidate(5003))
        await drain
        await asyncio.sleep(0.05)

        assert pc.ports == [5001, 5002, 5003]

    async def test_queued_candidates_applied_exactly_once(self, factory):
        coordinator = factory("c1")
        for port in (5001, 5002):
            await coordinator.add_remote_candidate(candidate(port))

        await coordinator.set_remote_description(FAKE_OFFER)
        await coordinator.add_remote_candidate(candidate(5003))
        await coordinator.add_remote_candidate(None)

        assert factory.peer.ports == [5001, 5002, 5003]
        assert factory.peer.log.count("candidate") == 3
        assert len(coordinator.pending) == 0

    async def test_malformed_candidate_skipped(self, factory):
        coordinator = factory("c1")
        await coordinator.set_remote_description(FAKE_OFFER)

        await coordinator.add_remote_candidate({"candidate": "candidate:nonsense"})
        await coordinator.add_remote_candidate(candidate(5004))

        assert factory.peer.ports == [5004]

    async def test_second_remote_description_rejected(self, factory):
        coordinator = factory("c1")
        await coordinator.set_remote_description(FAKE_OFFER)

        with pytest.raises(NegotiationError):
            await coordinator.set_remote_description(FAKE_OFFER)

    async def test_answer_sets_remote_then_local(self, factory):
        coordinator = factory("c1")
        await coordinator.acquire_local_media(CallKind.VOICE)

        answer = await coordinator.create_answer(FAKE_OFFER)

        assert answer["type"] == "answer"
        assert coordinator.remote_description_set
        assert factory.peer.remoteDescription.type == "offer"

    async def test_answer_needs_an_offer(self, factory):
        coordinator = factory("c1")
        with pytest.raises(NegotiationError):
            await coordinator.create_answer(FAKE_ANSWER)

    async def test_teardown_twice(self, factory):
        coordinator = factory("c1")
        media = await coordinator.acquire_local_media(CallKind.VIDEO)
        await coordinator.add_remote_candidate(candidate(5001))

        await coordinator.teardown()
        await coordinator.teardown()

        assert media.released
        assert all(track.readyState == "ended" for track in media.tracks)
        assert all(track.stop_calls == 1 for track in media.tracks)
        assert factory.peer.close_calls == 1
        assert len(coordinator.pending) == 0

    async def test_release_during_capture_stops_new_tracks(self, factory):
        coordinator = factory("c1")
        gate = asyncio.Event()
        captured = []

        async def slow_source(kind):
            await gate.wait()
            media = LocalMedia([FakeTrack("audio")])
            captured.append(media)
            return media

        coordinator._media_source = slow_source
        acquire = asyncio.ensure_future(coordinator.acquire_local_media(CallKind.VOICE))
        await asyncio.sleep(0)
        await coordinator.teardown()
        gate.set()

        assert await acquire is None
        assert captured[0].released
        assert coordinator.local_media is None

    async def test_mute_replaces_sender_track(self, factory):
        coordinator = factory("c1")
        media = await coordinator.acquire_local_media(CallKind.VIDEO)
        audio_sender = factory.peer.senders[0]

        assert coordinator.set_audio_enabled(False)
        assert audio_sender.track is None
        assert coordinator.set_audio_enabled(True)
        assert audio_sender.track is media.tracks[0]

    async def test_connection_state_forwarded(self, factory):
        coordinator = factory("c1")
        states = []
        coordinator.on_connection_state = states.append
        coordinator._peer()

        await factory.peer.set_state("connected")
        await coordinator.teardown()
        await factory.peer.set_state("failed")

        assert states == ["connected"]

    async def test_remote_track_recorded(self, factory):
        coordinator = factory("c1")
        seen = []
        coordinator.on_remote_track = seen.append
        coordinator._peer()

        track = FakeTrack("video")
        factory.peer.handlers["track"](track)

        assert coordinator.remote_tracks == [track]
        assert seen == [track]
