import asyncio

from chapter_studio import media_search
from chapter_studio.config import MusicSourcesConfig
from chapter_studio.media_search import FreesoundClient, JamendoMusicClient, MediaResolver
from chapter_studio.models import MusicTrack, ScriptLine, SoundEffect
from chapter_studio.search_cache import SearchCache


class JsonResponse:
    def __init__(self, payload):
        self.payload = payload

    def raise_for_status(self):
        return None

    def json(self):
        return self.payload


def test_jamendo_search_maps_results(monkeypatch):
    calls = []

    def fake_get(url, params, timeout):
        calls.append(params)
        return JsonResponse({"results": [
            {"id": 7, "name": "Night Sea", "artist_name": "Orca", "audio": "https://cdn.example/7.mp3", "duration": 181},
            {"id": 8, "name": "No Audio"},
        ]})

    monkeypatch.setattr(media_search.requests, "get", fake_get)
    client = JamendoMusicClient(MusicSourcesConfig(jamendo_client_id="abc"))

    tracks = asyncio.run(client.search_tracks(["dark", "ambient"]))

    assert [t.name for t in tracks] == ["Night Sea"]
    assert tracks[0].duration == 181.0
    assert calls[0]["fuzzytags"] == "dark ambient"
    assert calls[0]["client_id"] == "abc"


def test_clients_without_credentials_return_nothing(monkeypatch):
    def fail_get(*args, **kwargs):
        raise AssertionError("no request expected")

    monkeypatch.setattr(media_search.requests, "get", fail_get)

    assert asyncio.run(JamendoMusicClient(MusicSourcesConfig()).search_tracks(["calm"])) == []
    assert asyncio.run(FreesoundClient(MusicSourcesConfig()).search_sounds(["door"])) == []


def test_freesound_search_maps_previews(monkeypatch):
    def fake_get(url, params, timeout):
        assert params["query"] == "door creak"
        return JsonResponse({"results": [{
            "id": 11,
            "name": "Old Door",
            "previews": {"preview-lq-mp3": "https://cdn.example/lq.mp3", "preview-hq-mp3": "https://cdn.example/hq.mp3"},
            "duration": 2.5,
        }]})

    monkeypatch.setattr(media_search.requests, "get", fake_get)
    client = FreesoundClient(MusicSourcesConfig(freesound_api_key="key"))

    sounds = asyncio.run(client.search_sounds(["door", "creak"]))

    assert sounds[0].preview_urls() == ["https://cdn.example/hq.mp3", "https://cdn.example/lq.mp3"]


class PickySounds:
    def __init__(self):
        self.queries = []

    async def search_sounds(self, keywords):
        self.queries.append(list(keywords))
        if keywords == ["old"]:
            return [SoundEffect(id="1", name="Old Thing")]
        return []


def test_find_sound_drops_trailing_terms_and_caches():
    sounds = PickySounds()
    resolver = MediaResolver(None, sounds, SearchCache())
    line = ScriptLine(speaker="SFX", text="old rusty hinge", search_keywords=["old rusty", "hinge"])

    async def run_test():
        first = await resolver.resolve_line(line)
        second = await resolver.resolve_line(line)
        return first, second

    first, second = asyncio.run(run_test())

    assert first.sound_effect.name == "Old Thing"
    assert second.sound_effect == first.sound_effect
    assert sounds.queries == [["old", "rusty", "hinge"], ["old", "rusty"], ["old"]]


def test_resolve_script_keeps_order_and_leaves_misses_unresolved():
    resolver = MediaResolver(None, PickySounds(), SearchCache())
    lines = [
        ScriptLine(speaker="Narrator", text="Hello"),
        ScriptLine(speaker="SFX", text="nothing matches"),
        ScriptLine(speaker="SFX", text="old"),
    ]

    resolved = asyncio.run(resolver.resolve_script(lines))

    assert resolved[0] is lines[0]
    assert resolved[1].sound_effect is None
    assert resolved[2].sound_effect.name == "Old Thing"


class BusyTracks:
    def __init__(self):
        self.calls = 0

    async def search_tracks(self, keywords):
        self.calls += 1
        if self.calls == 1:
            raise RuntimeError("service overloaded")
        return [MusicTrack(id="t1", name="Second Try", audio_url="https://example.com/t.mp3")]


def test_music_search_backs_off_with_injected_sleep():
    delays = []

    async def record_sleep(delay):
        delays.append(delay)

    tracks = BusyTracks()
    resolver = MediaResolver(tracks, None, SearchCache(), sleep=record_sleep)

    track = asyncio.run(resolver.select_music(["calm"]))

    assert track.name == "Second Try"
    assert tracks.calls == 2
    assert delays == [1.0]
