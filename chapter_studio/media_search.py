"""Background music and sound-effect search."""

import asyncio
from typing import Any, Awaitable, Callable, Dict, List, Optional

import requests
from rich.console import Console

from chapter_studio.audio_tools import extension_for_mime
from chapter_studio.config import MusicSourcesConfig, RetryConfig
from chapter_studio.models import MusicTrack, ScriptLine, SoundEffect
from chapter_studio.resilience import ChapterStudioError, call_with_retries, fetch_with_fallback
from chapter_studio.search_cache import SearchCache
from chapter_studio.services import SoundEffectSearch, TrackSearch


console = Console()

SFX_SEARCH_DELAY_MS = 500


def _get_json(url: str, params: Dict[str, Any], timeout: float) -> Dict[str, Any]:
    resp = requests.get(url, params=params, timeout=timeout)
    resp.raise_for_status()
    return resp.json()


class JamendoMusicClient:
    """Search royalty-free music on Jamendo."""

    def __init__(self, sources: Optional[MusicSourcesConfig] = None, timeout: float = 30.0):
        self.sources = sources or MusicSourcesConfig()
        self.timeout = timeout

    async def search_tracks(self, keywords: List[str]) -> List[MusicTrack]:
        """Search for tracks by tag, most popular first.

        Args:
            keywords: Mood or genre tags (e.g. 'ambient', 'epic').

        Returns:
            Ranked list of tracks.
        """
        if not self.sources.jamendo_client_id:
            console.print("[yellow]Jamendo client id not configured, skipping music search[/yellow]")
            return []

        params = {
            "client_id": self.sources.jamendo_client_id,
            "format": "json",
            "limit": self.sources.result_limit,
            "fuzzytags": " ".join(keywords),
            "order": "popularity_total",
            "audioformat": "mp32",
        }
        data = await asyncio.to_thread(_get_json, self.sources.jamendo_url, params, self.timeout)

        tracks = []
        for hit in data.get("results", []):
            audio_url = hit.get("audio") or hit.get("audiodownload") or ""
            if not audio_url:
                continue
            tracks.append(MusicTrack(
                id=str(hit.get("id", "")),
                name=hit.get("name", "untitled"),
                artist=hit.get("artist_name", ""),
                audio_url=audio_url,
                duration=float(hit.get("duration") or 0),
                license=hit.get("license_ccurl", ""),
            ))
        return tracks


class FreesoundClient:
    """Search sound effects on Freesound."""

    FIELDS = "id,name,previews,license,username,duration"

    def __init__(self, sources: Optional[MusicSourcesConfig] = None):
        self.sources = sources or MusicSourcesConfig()

    async def search_sounds(self, keywords: List[str]) -> List[SoundEffect]:
        if not self.sources.freesound_api_key:
            console.print("[yellow]Freesound API key not configured, skipping sound search[/yellow]")
            return []

        params = {
            "query": " ".join(keywords),
            "token": self.sources.freesound_api_key,
            "fields": self.FIELDS,
            "page_size": self.sources.result_limit,
        }
        data = await asyncio.to_thread(
            _get_json, self.sources.freesound_url, params, self.sources.sfx_search_timeout
        )

        return [
            SoundEffect(
                id=str(hit.get("id", "")),
                name=hit.get("name", "sound"),
                previews=hit.get("previews") or {},
                license=hit.get("license", ""),
                username=hit.get("username", ""),
                duration=float(hit.get("duration") or 0),
            )
            for hit in data.get("results", [])
        ]


class MediaResolver:
    """Picks music and sound effects for a chapter, caching search results.

    The resolver owns no global state; the cache it is given decides how
    long results live.
    """

    def __init__(
        self,
        tracks: Optional[TrackSearch],
        sounds: Optional[SoundEffectSearch],
        cache: SearchCache,
        retry: Optional[RetryConfig] = None,
        prefetch_sfx: bool = False,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.tracks = tracks
        self.sounds = sounds
        self.cache = cache
        self.retry = retry or RetryConfig()
        self.prefetch_sfx = prefetch_sfx
        self.sleep = sleep

    async def _cached_search(self, namespace: str, keywords: List[str], search, initial_delay_ms: int) -> list:
        cached = self.cache.get(namespace, keywords)
        if cached is not None:
            return cached

        results = await call_with_retries(
            lambda: search(keywords),
            max_attempts=self.retry.max_attempts,
            initial_delay_ms=initial_delay_ms,
            timeout=self.retry.http_timeout_seconds,
            label=f"{namespace} search '{' '.join(keywords)}'",
            sleep=self.sleep,
        )
        self.cache.set(namespace, keywords, results)
        return results

    async def select_music(self, keywords: List[str]) -> Optional[MusicTrack]:
        """First-ranked track for the keywords, or None when nothing matches.

        Raises:
            RemoteCallError: The search service kept failing.
        """
        if self.tracks is None or not keywords:
            return None
        results = await self._cached_search("music", keywords, self.tracks.search_tracks, self.retry.initial_delay_ms)
        if not results:
            return None
        track = results[0]
        console.print(f"[green]Music selected: {track.name} by {track.artist or 'unknown'}[/green]")
        return track

    async def find_sound(self, keywords: List[str]) -> Optional[SoundEffect]:
        """Search for a sound, dropping trailing terms until something matches."""
        if self.sounds is None:
            return None

        terms = [term for keyword in keywords for term in keyword.split() if term]
        while terms:
            results = await self._cached_search("sfx", terms, self.sounds.search_sounds, SFX_SEARCH_DELAY_MS)
            if results:
                return results[0]
            terms = terms[:-1]
        return None

    async def _prefetch(self, effect: SoundEffect) -> SoundEffect:
        for url in effect.preview_urls():
            try:
                response = await fetch_with_fallback(url, self.retry)
            except ChapterStudioError as e:
                console.print(f"[dim]SFX preview fetch failed for {effect.name}: {e}[/dim]")
                continue
            mime_type = response.content_type.split(";")[0].strip() or effect.mime_type
            if extension_for_mime(mime_type, "") == "":
                mime_type = effect.mime_type
            return effect.model_copy(update={"data": response.content, "mime_type": mime_type})
        return effect

    async def resolve_line(self, line: ScriptLine) -> ScriptLine:
        """Attach a sound effect to an SFX line; other lines pass through.

        A failed search leaves the line unresolved so no cue is timed for it.
        """
        if not line.is_sfx or line.sound_effect is not None:
            return line

        keywords = line.search_keywords or [line.text]
        try:
            effect = await self.find_sound(keywords)
        except ChapterStudioError as e:
            console.print(f"[yellow]SFX search failed for '{line.text}': {e}[/yellow]")
            return line

        if effect is None:
            console.print(f"[yellow]No SFX found for '{line.text}'[/yellow]")
            return line

        if self.prefetch_sfx and effect.data is None:
            effect = await self._prefetch(effect)

        return line.model_copy(update={"sound_effect": effect})

    async def resolve_script(self, lines: List[ScriptLine]) -> List[ScriptLine]:
        """Resolve all SFX lines concurrently, keeping script order."""
        return list(await asyncio.gather(*(self.resolve_line(line) for line in lines)))

