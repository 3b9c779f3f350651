# -*- coding: utf-8 -*-
"""
m3u8_merge.py - Asynchronous HLS segment downloader and merger

Downloads every segment of an M3U8 media playlist with:
- Best variant selection from master playlists (or interactive with questionary)
- Bounded parallel downloads via aiohttp with fixed-delay retries
- AES-128 decryption of segments
- Ordered merge into a single transport stream
- Conversion to MP4 with FFmpeg (NVENC / AMF / libx264)
- Configuration via .env
"""

__version__ = "0.2.0"

import argparse
import asyncio
import enum
import logging
import os
import shutil
import subprocess
import sys
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Awaitable, BinaryIO, Callable, Dict, List, Optional, Tuple, Union
from urllib.parse import urljoin, urlparse, urlunparse

import aiofiles
import aiofiles.os
import aiohttp
import m3u8
import questionary
from aiohttp import ClientTimeout, TCPConnector
from Crypto.Cipher import AES
from Crypto.Util.Padding import unpad
from dotenv import load_dotenv
from tqdm.asyncio import tqdm
from tqdm.contrib.logging import logging_redirect_tqdm

log = logging.getLogger(__name__)

# ============================================================================
# CONFIGURATION
# ============================================================================

# Load environment variables from .env if present
load_dotenv()

# Default values
MAX_CONCURRENT_DOWNLOADS = int(os.getenv("MAX_CONCURRENT_DOWNLOADS", "8"))
RETRY_COUNT = int(os.getenv("RETRY_COUNT", "3"))  # attempts per segment
RETRY_DELAY = float(os.getenv("RETRY_DELAY", "2.0"))  # fixed, seconds
TIMEOUT = int(os.getenv("TIMEOUT", "30"))  # 30 seconds default
FFMPEG_PATH = os.getenv("FFMPEG_PATH", "ffmpeg")  # Path to ffmpeg binary
TEMP_DIR = os.getenv("TEMP_DIR", "").strip() or None

# Custom DNS servers (space-separated)
DNS_SERVERS_STR = os.getenv("DNS_SERVERS", "").strip()
DNS_SERVERS = DNS_SERVERS_STR.split() if DNS_SERVERS_STR else None

# Headers for playlist requests
HEADERS = {
    "User-Agent": (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
    ),
    "Accept": "*/*",
    "Accept-Language": "zh-CN,zh;q=0.9,en;q=0.8",
}

# Simplified headers for keys and segments
SEGMENT_HEADERS = {
    "User-Agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36",
    "Accept": "*/*",
}

DEFAULT_AUDIO_BITRATE = 256  # kbps
SEGMENT_FILENAME = "seg_{:05d}.ts"
MERGED_FILENAME = "merged.ts"


# ============================================================================
# EXCEPTIONS
# ============================================================================


class M3u8MergeError(Exception):
    """Base exception for all errors that abort a download job."""


class ConfigurationError(M3u8MergeError):
    """Raised for invalid download options."""


class PlaylistFetchError(M3u8MergeError):
    """Raised when a playlist cannot be downloaded or read."""


class PlaylistParseError(M3u8MergeError):
    """Raised when playlist content is not a usable M3U8 document."""


class NoVariantsError(M3u8MergeError):
    """Raised when a master playlist lists no variant streams."""


class MissingBaseUrlError(M3u8MergeError):
    """Raised when a relative URI must be resolved but the playlist has no network location."""

    def __init__(self, uri: str):
        super().__init__(f"Cannot resolve relative URI '{uri}': playlist was not loaded from a network URL")
        self.uri = uri


class KeyFetchError(M3u8MergeError):
    """Raised when the decryption key cannot be downloaded."""


class IvFormatError(M3u8MergeError):
    """Raised when the IV attribute is missing, not hexadecimal, or not 16 bytes."""


class UnsupportedEncryptionError(M3u8MergeError):
    """Raised for encryption methods other than AES-128."""


class DecryptionError(M3u8MergeError):
    """Raised when segment data cannot be decrypted."""


class BlockAlignmentError(DecryptionError):
    """Raised when ciphertext length is not a multiple of the AES block size."""


class PaddingError(DecryptionError):
    """Raised when PKCS#7 padding is invalid after decryption (wrong key/IV or corrupt data)."""


class SegmentDownloadError(M3u8MergeError):
    """Raised when a segment still fails after all retry attempts."""

    def __init__(self, index: int, url: str, attempts: int, cause: Optional[str] = None):
        message = f"Segment {index} failed after {attempts} attempt(s): {url}"
        if cause:
            message += f" ({cause})"
        super().__init__(message)
        self.index = index
        self.url = url
        self.attempts = attempts
        self.cause = cause


class MissingSegmentDataError(M3u8MergeError):
    """Raised at merge time when a downloaded segment has no temporary file."""

    def __init__(self, index: int, path: Path):
        super().__init__(f"Data for segment {index} is missing: {path}")
        self.index = index
        self.path = path


class FFmpegNotFoundError(M3u8MergeError):
    """Raised when ffmpeg is not installed or not runnable."""


class TranscodeError(M3u8MergeError):
    """Raised when ffmpeg fails to convert the merged stream."""

    def __init__(self, returncode: int, stderr: str = ""):
        super().__init__(f"FFmpeg exited with code {returncode}")
        self.returncode = returncode
        self.stderr = stderr


# ============================================================================
# DATA CLASSES
# ============================================================================


@dataclass(frozen=True)
class Resolution:
    width: int
    height: int

    @property
    def area(self) -> int:
        return self.width * self.height

    def __str__(self):
        return f"{self.width}x{self.height}"


@dataclass(frozen=True)
class Variant:
    """One quality option of a master playlist."""

    uri: str
    bandwidth: int = 0  # bits/sec
    resolution: Optional[Resolution] = None

    def __str__(self):
        """String representation for display in questionary."""
        res = f" ({self.resolution})" if self.resolution else ""
        return f"🎬 Stream{res} @ {self.bandwidth // 1000} kbps"


@dataclass(frozen=True)
class KeyInfo:
    """EXT-X-KEY attributes as found in the playlist."""

    method: str
    uri: Optional[str] = None
    iv: Optional[str] = None


@dataclass(frozen=True)
class Segment:
    index: int  # zero-based, defines final byte order
    uri: str
    key: Optional[KeyInfo] = None


@dataclass(frozen=True)
class MasterManifest:
    variants: List[Variant] = field(default_factory=list)


@dataclass(frozen=True)
class MediaManifest:
    segments: List[Segment] = field(default_factory=list)
    media_sequence: int = 0


Manifest = Union[MasterManifest, MediaManifest]


@dataclass(frozen=True)
class EncryptionKey:
    key: bytes  # 16 bytes
    iv: bytes  # 16 bytes


@dataclass
class DownloadTask:
    """Work item for a single segment."""

    index: int
    url: str
    path: Path  # temporary store
    attempt: int = 0


@dataclass(frozen=True)
class ProgressEvent:
    index: int
    completed: int
    total: int


ProgressCallback = Callable[[ProgressEvent], None]
VariantChooser = Callable[[List[Variant]], Awaitable[Variant]]


@dataclass
class DownloadOptions:
    """Settings for one download job. Defaults come from the environment."""

    output: Path = Path("output.mp4")
    concurrency: int = MAX_CONCURRENT_DOWNLOADS
    retries: int = RETRY_COUNT
    retry_delay: float = RETRY_DELAY
    video_bitrate: int = 0  # kbps, 0 = encoder default
    audio_bitrate: int = 0  # kbps, 0 = DEFAULT_AUDIO_BITRATE
    keep_temp: bool = False
    temp_dir: Optional[str] = TEMP_DIR

    def validate(self) -> None:
        """Raise ConfigurationError for values the pipeline cannot run with."""
        if self.concurrency < 1:
            raise ConfigurationError(f"concurrency must be at least 1, got {self.concurrency}")
        if self.retries < 1:
            raise ConfigurationError(f"retries must be at least 1, got {self.retries}")
        if self.retry_delay < 0:
            raise ConfigurationError(f"retry delay cannot be negative, got {self.retry_delay}")
        if self.video_bitrate < 0 or self.audio_bitrate < 0:
            raise ConfigurationError("bitrates cannot be negative")


# ============================================================================
# DISPLAY FUNCTIONS AND UTILITIES
# ============================================================================


def print_banner(options: DownloadOptions) -> None:
    """Display the program banner."""
    print(f"\n{'='*60}")
    print(f"  m3u8-merge v{__version__}")
    print(f"{'='*60}")
    print("Configuration:")
    print(f"  - Parallel downloads: {options.concurrency}")
    print(f"  - Retry count: {options.retries} (every {options.retry_delay:g}s)")
    print(f"  - Timeout: {TIMEOUT}s")
    print(f"  - Output: {options.output}")
    print(f"{'='*60}\n")


def is_network_location(location: str) -> bool:
    return urlparse(location).scheme in ("http", "https")


def build_headers(url: str, base_headers: Dict[str, str]) -> Dict[str, str]:
    """
    Copy a header set and add a Referer derived from the URL's domain.

    Args:
        url: Request URL
        base_headers: Header set to start from

    Returns:
        New header dictionary
    """
    headers = dict(base_headers)
    hostname = urlparse(url).hostname
    if hostname:
        headers["Referer"] = f"https://{hostname}/"
    return headers


def create_dns_resolver() -> Optional[aiohttp.AsyncResolver]:
    """
    Create a custom DNS resolver if DNS_SERVERS is configured.

    Returns:
        AsyncResolver if DNS servers are configured, None otherwise
    """
    if DNS_SERVERS:
        try:
            resolver = aiohttp.AsyncResolver(nameservers=DNS_SERVERS)
            log.info("Using custom DNS servers: %s", ", ".join(DNS_SERVERS))
            return resolver
        except (ImportError, RuntimeError, ValueError) as e:
            log.warning("Failed to create custom DNS resolver (%s), falling back to system DNS", e)
            return None
    return None


def create_session(concurrency: int = MAX_CONCURRENT_DOWNLOADS) -> aiohttp.ClientSession:
    """Create the shared client session. Must be called inside a running event loop."""
    connector_args = dict(
        limit=max(100, concurrency),
        limit_per_host=concurrency,
        ttl_dns_cache=300,
        keepalive_timeout=30,
    )
    resolver = create_dns_resolver()
    if resolver:
        connector_args["resolver"] = resolver

    return aiohttp.ClientSession(
        connector=TCPConnector(**connector_args),
        timeout=ClientTimeout(total=TIMEOUT),
        headers=SEGMENT_HEADERS,
    )


# ============================================================================
# PLAYLIST ACQUISITION AND PARSING
# ============================================================================


def manifest_base_url(url: str) -> str:
    """
    Directory URL of a playlist: query and fragment removed, path cut after its last '/'.

    Args:
        url: Playlist URL

    Returns:
        Base URL ending with '/'
    """
    parsed = urlparse(url)
    path = parsed.path
    cut = path.rfind("/")
    path = path[: cut + 1] if cut >= 0 else "/"
    return urlunparse((parsed.scheme, parsed.netloc, path, "", "", ""))


def resolve_uri(base: Optional[str], uri: str) -> str:
    """
    Resolve a playlist URI against the playlist's base URL.

    Args:
        base: Base URL from manifest_base_url, or None for local playlists
        uri: Relative or absolute URI

    Returns:
        Absolute URI

    Raises:
        MissingBaseUrlError: If the URI is relative and there is no base
    """
    if is_network_location(uri):
        return uri
    if base is None:
        raise MissingBaseUrlError(uri)
    return urljoin(base, uri)


async def fetch_playlist(session: aiohttp.ClientSession, url: str) -> bytes:
    """
    Download a playlist with browser headers.

    Args:
        session: aiohttp session
        url: Playlist URL

    Returns:
        Raw playlist bytes
    """
    timeout = ClientTimeout(total=TIMEOUT)
    try:
        async with session.get(url, headers=build_headers(url, HEADERS), timeout=timeout) as resp:
            if not 200 <= resp.status < 300:
                raise PlaylistFetchError(f"Failed to download playlist {url}: HTTP {resp.status}")
            return await resp.read()
    except (aiohttp.ClientError, asyncio.TimeoutError) as e:
        raise PlaylistFetchError(f"Failed to download playlist {url}: {str(e) or type(e).__name__}") from e


async def load_manifest(session: aiohttp.ClientSession, location: str) -> Tuple[bytes, Optional[str]]:
    """
    Get playlist content from a URL or a local file.

    Args:
        session: aiohttp session
        location: HTTP(S) URL or local path

    Returns:
        Tuple (content, base_url); base_url is None for local files
    """
    if is_network_location(location):
        content = await fetch_playlist(session, location)
        return content, manifest_base_url(location)

    try:
        async with aiofiles.open(location, "rb") as f:
            content = await f.read()
    except OSError as e:
        raise PlaylistFetchError(f"Cannot read playlist file {location}: {e}") from e
    return content, None


def _key_info(key: Optional[m3u8.Key]) -> Optional[KeyInfo]:
    if key is None or not key.method or key.method.upper() == "NONE":
        return None
    return KeyInfo(method=key.method, uri=key.uri, iv=key.iv)


def parse_manifest(content: bytes) -> Manifest:
    """
    Parse M3U8 content into a master or media manifest.

    Args:
        content: Raw playlist bytes

    Returns:
        MasterManifest if the playlist lists variants, MediaManifest otherwise
    """
    try:
        text = content.decode("utf-8-sig")
    except UnicodeDecodeError as e:
        raise PlaylistParseError(f"Playlist is not valid UTF-8: {e}") from e

    if not text.lstrip().startswith("#EXTM3U"):
        raise PlaylistParseError("Content is not an M3U8 playlist (missing #EXTM3U header)")

    try:
        playlist = m3u8.loads(text)
    except (m3u8.ParseError, ValueError) as e:
        raise PlaylistParseError(f"Failed to parse M3U8: {e}") from e

    if playlist.is_variant:
        variants = []
        for p in playlist.playlists:
            info = p.stream_info
            resolution = Resolution(*info.resolution) if info.resolution else None
            variants.append(Variant(uri=p.uri, bandwidth=int(info.bandwidth or 0), resolution=resolution))
        return MasterManifest(variants=variants)

    segments = [
        Segment(index=i, uri=seg.uri, key=_key_info(seg.key))
        for i, seg in enumerate(playlist.segments)
    ]
    return MediaManifest(segments=segments, media_sequence=playlist.media_sequence or 0)


# ============================================================================
# VARIANT SELECTION
# ============================================================================


def _variant_score(variant: Variant) -> Tuple[int, int]:
    area = variant.resolution.area if variant.resolution else 0
    return (area, variant.bandwidth)


def select_best_variant(variants: List[Variant]) -> Variant:
    """
    Pick the variant with the largest resolution, using bandwidth as the tie-break.

    Variants without a resolution count as area 0. Exact ties resolve to the
    last listed variant.

    Raises:
        NoVariantsError: If the list is empty
    """
    if not variants:
        raise NoVariantsError("Master playlist has no variant streams")
    return max(reversed(variants), key=_variant_score)


async def select_variant_interactive(variants: List[Variant]) -> Variant:
    """
    Let the user pick a variant, with the best one preselected.

    Args:
        variants: Variants of the master playlist

    Returns:
        Selected variant
    """
    best = select_best_variant(variants)
    choices: List[questionary.Choice] = [questionary.Choice(str(v), value=v) for v in variants]
    default = next(c for c in choices if c.value is best)
    answer: Optional[Variant] = await questionary.select(
        "🎬 Select variant stream:",
        choices=choices,
        default=default,
    ).ask_async()

    if answer is None:  # User cancelled
        raise ConfigurationError("No variant selected")
    return answer


async def resolve_media_manifest(
    session: aiohttp.ClientSession,
    location: str,
    choose_variant: Optional[VariantChooser] = None,
) -> Tuple[MediaManifest, Optional[str]]:
    """
    Load a playlist and, for master playlists, follow the chosen variant.

    Args:
        session: aiohttp session
        location: Playlist URL or local path
        choose_variant: Optional coroutine picking a variant; defaults to select_best_variant

    Returns:
        Tuple (media manifest, base URL for its segment and key URIs)
    """
    content, base = await load_manifest(session, location)
    manifest = parse_manifest(content)

    if isinstance(manifest, MediaManifest):
        log.info("Media playlist with %d segments", len(manifest.segments))
        return manifest, base

    log.info("Master playlist with %d variant streams", len(manifest.variants))
    if choose_variant is not None:
        variant = await choose_variant(manifest.variants)
    else:
        variant = select_best_variant(manifest.variants)
    log.info(
        "Selected stream: %d kbps, resolution %s",
        variant.bandwidth // 1000,
        variant.resolution or "unknown",
    )

    media_url = resolve_uri(base, variant.uri)
    media = parse_manifest(await fetch_playlist(session, media_url))
    if not isinstance(media, MediaManifest):
        raise PlaylistParseError(f"Variant playlist {media_url} is not a media playlist")

    log.info("Media playlist with %d segments", len(media.segments))
    return media, manifest_base_url(media_url)


# ============================================================================
# KEY RESOLUTION AND DECRYPTION
# ============================================================================


def decode_iv(value: str) -> bytes:
    """
    Decode a hexadecimal IV attribute, with or without a 0x prefix.

    Raises:
        IvFormatError: If the value is not hex or not exactly 16 bytes
    """
    text = value.strip()
    if text[:2].lower() == "0x":
        text = text[2:]
    try:
        iv = bytes.fromhex(text)
    except ValueError as e:
        raise IvFormatError(f"IV is not a hexadecimal string: {value!r}") from e
    if len(iv) != AES.block_size:
        raise IvFormatError(f"IV must be {AES.block_size} bytes, got {len(iv)}: {value!r}")
    return iv


def _warn_on_key_rotation(manifest: MediaManifest) -> None:
    first = manifest.segments[0].key
    for segment in manifest.segments[1:]:
        if segment.key != first:
            log.warning(
                "Segment %d uses a different key than segment 0; only the first key is applied",
                segment.index,
            )
            return


async def resolve_key(
    session: aiohttp.ClientSession, manifest: MediaManifest, base: Optional[str]
) -> Optional[EncryptionKey]:
    """
    Fetch the key referenced by the first segment, if any.

    One key is shared by all segments of the job.

    Args:
        session: aiohttp session
        manifest: Media manifest
        base: Base URL for relative key URIs

    Returns:
        EncryptionKey, or None if the stream is not encrypted
    """
    if not manifest.segments or manifest.segments[0].key is None:
        return None

    info = manifest.segments[0].key
    _warn_on_key_rotation(manifest)

    if info.method.upper() != "AES-128":
        raise UnsupportedEncryptionError(f"Unsupported encryption method: {info.method}")
    if not info.uri:
        raise KeyFetchError("EXT-X-KEY has no URI")
    if info.iv is None:
        raise IvFormatError("EXT-X-KEY has no IV attribute")

    key_url = resolve_uri(base, info.uri)
    iv = decode_iv(info.iv)

    timeout = ClientTimeout(total=TIMEOUT)
    try:
        async with session.get(key_url, headers=build_headers(key_url, SEGMENT_HEADERS), timeout=timeout) as resp:
            if not 200 <= resp.status < 300:
                raise KeyFetchError(f"Failed to download key {key_url}: HTTP {resp.status}")
            key = await resp.read()
    except (aiohttp.ClientError, asyncio.TimeoutError) as e:
        raise KeyFetchError(f"Failed to download key {key_url}: {str(e) or type(e).__name__}") from e

    if len(key) != AES.block_size:
        raise KeyFetchError(f"Key from {key_url} must be {AES.block_size} bytes, got {len(key)}")

    log.info("Resolved AES-128 key from %s", key_url)
    return EncryptionKey(key=key, iv=iv)


def decrypt(ciphertext: bytes, key: bytes, iv: bytes) -> bytes:
    """
    AES-128-CBC decrypt and strip PKCS#7 padding.

    Raises:
        BlockAlignmentError: If the length is not a multiple of 16
        PaddingError: If the padding is invalid
    """
    if len(ciphertext) % AES.block_size:
        raise BlockAlignmentError(
            f"Ciphertext length {len(ciphertext)} is not a multiple of {AES.block_size}"
        )
    cipher = AES.new(key, AES.MODE_CBC, iv)
    try:
        return unpad(cipher.decrypt(ciphertext), AES.block_size)
    except ValueError as e:
        raise PaddingError(f"Invalid padding after decryption: {e}") from e


def decrypt_segment(data: bytes, key: Optional[EncryptionKey]) -> bytes:
    """Decrypt segment data with the job key, or pass it through unencrypted."""
    if key is None:
        return data
    return decrypt(data, key.key, key.iv)


# ============================================================================
# ASYNC DOWNLOAD FUNCTIONS
# ============================================================================


async def fetch_segment(
    session: aiohttp.ClientSession,
    task: DownloadTask,
    retries: int = RETRY_COUNT,
    retry_delay: float = RETRY_DELAY,
) -> bytes:
    """
    Download a segment, retrying with a fixed delay.

    Any non-2xx response or transport error counts as a failed attempt.

    Args:
        session: aiohttp session
        task: Segment task; its attempt counter is updated
        retries: Number of attempts
        retry_delay: Seconds to wait between attempts

    Returns:
        Response body

    Raises:
        SegmentDownloadError: If every attempt failed
    """
    timeout = ClientTimeout(total=TIMEOUT)
    cause = None

    for attempt in range(1, retries + 1):
        task.attempt = attempt
        try:
            async with session.get(task.url, timeout=timeout) as response:
                if 200 <= response.status < 300:
                    return await response.read()
                cause = f"HTTP {response.status}"
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            cause = str(e) or type(e).__name__

        log.warning("Attempt %d/%d failed for segment %d: %s - %s", attempt, retries, task.index, task.url, cause)
        if attempt < retries:
            await asyncio.sleep(retry_delay)

    raise SegmentDownloadError(task.index, task.url, retries, cause)


def build_tasks(manifest: MediaManifest, base: Optional[str], job_dir: Path) -> List[DownloadTask]:
    """Create one task per segment, with resolved URL and temporary file path."""
    return [
        DownloadTask(
            index=segment.index,
            url=resolve_uri(base, segment.uri),
            path=job_dir / SEGMENT_FILENAME.format(segment.index),
        )
        for segment in manifest.segments
    ]


async def download_segments(
    session: aiohttp.ClientSession,
    tasks: List[DownloadTask],
    key: Optional[EncryptionKey],
    options: DownloadOptions,
    on_progress: Optional[ProgressCallback] = None,
) -> None:
    """
    Download, decrypt and store every task using a fixed pool of workers.

    At most options.concurrency segments are in their fetch/decrypt/write
    pipeline at any time. The first failure stops workers from taking new
    tasks; pipelines already running finish, but their results are ignored.

    Args:
        session: aiohttp session
        tasks: Segment tasks
        key: Shared decryption key, or None
        options: Job options (concurrency, retries, retry_delay)
        on_progress: Called with a ProgressEvent after each stored segment

    Raises:
        The first error raised by any segment pipeline
    """
    total = len(tasks)
    queue: asyncio.Queue = asyncio.Queue()
    for task in tasks:
        queue.put_nowait(task)

    failed = asyncio.Event()
    errors: List[Exception] = []
    counter_lock = asyncio.Lock()
    completed = 0

    async def run_pipeline(task: DownloadTask) -> None:
        nonlocal completed
        data = await fetch_segment(session, task, options.retries, options.retry_delay)
        plaintext = decrypt_segment(data, key)
        async with aiofiles.open(task.path, "wb") as f:
            await f.write(plaintext)

        async with counter_lock:
            if failed.is_set():
                return
            completed += 1
            event = ProgressEvent(task.index, completed, total)
        if on_progress is not None:
            on_progress(event)

    async def worker() -> None:
        while not failed.is_set():
            try:
                task = queue.get_nowait()
            except asyncio.QueueEmpty:
                return
            try:
                await run_pipeline(task)
            except Exception as e:
                if failed.is_set():
                    log.debug("Ignoring failure of segment %d after job failure: %s", task.index, e)
                else:
                    failed.set()
                    errors.append(e)
                    log.error("Segment %d failed, aborting job: %s", task.index, e)

    workers = [asyncio.create_task(worker()) for _ in range(min(options.concurrency, total))]
    await asyncio.gather(*workers)

    if errors:
        raise errors[0]


# ============================================================================
# MERGE
# ============================================================================


async def merge_segments(
    total: int,
    segment_path: Callable[[int], Path],
    sink: BinaryIO,
    keep_temp: bool = False,
    on_progress: Optional[ProgressCallback] = None,
) -> int:
    """
    Append segment files 0..total-1 to the sink in index order.

    Args:
        total: Number of segments
        segment_path: Maps a segment index to its temporary file
        sink: Binary output stream
        keep_temp: Keep segment files after appending them
        on_progress: Called after each appended segment

    Returns:
        Number of bytes written

    Raises:
        MissingSegmentDataError: If a segment file does not exist
    """
    written = 0
    for index in range(total):
        path = segment_path(index)
        try:
            async with aiofiles.open(path, "rb") as f:
                chunk = await f.read()
        except FileNotFoundError as e:
            raise MissingSegmentDataError(index, path) from e

        sink.write(chunk)
        written += len(chunk)
        if not keep_temp:
            await aiofiles.os.remove(path)
        if on_progress is not None:
            on_progress(ProgressEvent(index, index + 1, total))
    return written


async def write_merged(
    job_dir: Path,
    total: int,
    keep_temp: bool = False,
    on_progress: Optional[ProgressCallback] = None,
) -> Path:
    """
    Merge the job's segment files into job_dir/merged.ts.

    The stream is written to a .part file that is renamed only once every
    segment was appended.
    """
    merged = job_dir / MERGED_FILENAME
    partial = merged.with_name(merged.name + ".part")
    with open(partial, "wb") as sink:
        written = await merge_segments(
            total,
            lambda index: job_dir / SEGMENT_FILENAME.format(index),
            sink,
            keep_temp=keep_temp,
            on_progress=on_progress,
        )
    os.replace(partial, merged)
    log.info("Merged %d segments (%.2f MB) into %s", total, written / (1024 * 1024), merged)
    return merged


# ============================================================================
# JOB ORCHESTRATION
# ============================================================================


def make_job_dir(temp_dir: Optional[str] = None) -> Path:
    """Create a unique temporary directory for one job."""
    if temp_dir:
        os.makedirs(temp_dir, exist_ok=True)
    return Path(tempfile.mkdtemp(prefix="m3u8-merge-", dir=temp_dir))


async def download_stream(
    location: str,
    options: Optional[DownloadOptions] = None,
    session: Optional[aiohttp.ClientSession] = None,
    on_progress: Optional[ProgressCallback] = None,
    on_merge_progress: Optional[ProgressCallback] = None,
    choose_variant: Optional[VariantChooser] = None,
) -> Path:
    """
    Download a whole HLS stream into one merged transport stream.

    Args:
        location: Playlist URL or local path
        options: Job options
        session: aiohttp session to use; a new one is created and closed if None
        on_progress: Progress callback for segment downloads
        on_merge_progress: Progress callback for the merge
        choose_variant: Variant chooser for master playlists

    Returns:
        Path of the merged stream inside the job directory
    """
    options = options or DownloadOptions()
    options.validate()

    owns_session = session is None
    if owns_session:
        session = create_session(options.concurrency)

    try:
        media, base = await resolve_media_manifest(session, location, choose_variant)
        key = await resolve_key(session, media, base)

        job_dir = make_job_dir(options.temp_dir)
        tasks = build_tasks(media, base, job_dir)
        log.info(
            "Downloading %d segments (%s) with %d workers",
            len(tasks),
            "encrypted" if key else "unencrypted",
            options.concurrency,
        )

        try:
            await download_segments(session, tasks, key, options, on_progress)
            return await write_merged(job_dir, len(tasks), options.keep_temp, on_merge_progress)
        except Exception:
            log.error("Download failed, temporary files kept in %s", job_dir)
            raise
    finally:
        if owns_session:
            await session.close()


# ============================================================================
# FFMPEG CONVERSION
# ============================================================================


class AccelType(enum.Enum):
    NVIDIA = "nvidia"
    AMD = "amd"
    CPU = "cpu"


def check_ffmpeg() -> None:
    """Make sure ffmpeg can be executed."""
    try:
        result = subprocess.run([FFMPEG_PATH, "-version"], stdout=subprocess.PIPE, stderr=subprocess.PIPE, check=False)
    except OSError as e:
        raise FFmpegNotFoundError(f"FFmpeg not found ({FFMPEG_PATH}); install it and add it to PATH") from e
    if result.returncode != 0:
        raise FFmpegNotFoundError(f"FFmpeg failed to run (exit code {result.returncode})")


def detect_acceleration() -> AccelType:
    """Pick a hardware encoder from `ffmpeg -encoders`."""
    try:
        result = subprocess.run(
            [FFMPEG_PATH, "-hide_banner", "-encoders"],
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            check=False,
        )
    except OSError as e:
        raise FFmpegNotFoundError(f"Failed to list FFmpeg encoders: {e}") from e

    encoders = result.stdout.decode("utf-8", errors="replace")
    if "h264_nvenc" in encoders:
        return AccelType.NVIDIA
    if "h264_amf" in encoders:
        return AccelType.AMD
    return AccelType.CPU


def build_ffmpeg_command(
    input_path: Union[str, Path],
    output_path: Union[str, Path],
    accel: AccelType,
    video_bitrate: int = 0,
    audio_bitrate: int = 0,
) -> List[str]:
    """
    Build the ffmpeg command converting the merged stream to MP4.

    Args:
        input_path: Merged transport stream
        output_path: Target MP4 file
        accel: Encoder family to use
        video_bitrate: Video bitrate in kbps, 0 for encoder default
        audio_bitrate: Audio bitrate in kbps, 0 for DEFAULT_AUDIO_BITRATE

    Returns:
        Command as list
    """
    cmd: List[str] = [FFMPEG_PATH, "-hide_banner", "-loglevel", "info", "-y"]

    if accel is AccelType.NVIDIA:
        cmd += ["-hwaccel", "cuda", "-hwaccel_output_format", "cuda", "-c:v", "h264_cuvid"]
        cmd += ["-i", str(input_path)]
        cmd += ["-c:v", "h264_nvenc", "-preset", "p3", "-rc", "vbr"]
    elif accel is AccelType.AMD:
        cmd += ["-i", str(input_path)]
        cmd += ["-c:v", "h264_amf", "-rc", "vbr"]
    else:
        cmd += ["-i", str(input_path)]
        cmd += ["-c:v", "libx264", "-preset", "medium"]

    if video_bitrate > 0:
        cmd += ["-b:v", f"{video_bitrate}k"]
    cmd += ["-c:a", "aac", "-b:a", f"{audio_bitrate or DEFAULT_AUDIO_BITRATE}k"]

    cmd.append(str(output_path))
    return cmd


def convert_to_mp4(
    input_path: Union[str, Path],
    output_path: Union[str, Path],
    accel: AccelType,
    video_bitrate: int = 0,
    audio_bitrate: int = 0,
) -> None:
    """Run ffmpeg on the merged stream (synchronous)."""
    cmd = build_ffmpeg_command(input_path, output_path, accel, video_bitrate, audio_bitrate)
    log.info("Converting to MP4 with %s encoder", accel.value)
    log.debug("FFmpeg command: %s", " ".join(cmd))

    try:
        result = subprocess.run(cmd, stdout=subprocess.PIPE, stderr=subprocess.PIPE, check=False)
    except OSError as e:
        raise FFmpegNotFoundError(f"Failed to run FFmpeg: {e}") from e

    if result.returncode != 0:
        stderr = result.stderr.decode("utf-8", errors="replace")
        log.error("FFmpeg output:\n%s", stderr)
        raise TranscodeError(result.returncode, stderr)


# ============================================================================
# ENTRY POINT
# ============================================================================


class ProgressReporter:
    """tqdm bar fed by ProgressEvents; the bar is created on the first event."""

    def __init__(self, desc: str, colour: str = "green"):
        self.desc = desc
        self.colour = colour
        self.bar: Optional[tqdm] = None

    def __call__(self, event: ProgressEvent) -> None:
        if self.bar is None:
            self.bar = tqdm(total=event.total, desc=self.desc, unit="seg", ncols=80, colour=self.colour)
        self.bar.update(1)

    def close(self) -> None:
        if self.bar is not None:
            self.bar.close()


async def run_download(location: str, options: DownloadOptions, interactive: bool = False) -> Path:
    """Run a download job with tqdm progress bars."""
    download_progress = ProgressReporter("⬇️  Segments")
    merge_progress = ProgressReporter("🔗 Merge", colour="blue")
    try:
        return await download_stream(
            location,
            options,
            on_progress=download_progress,
            on_merge_progress=merge_progress,
            choose_variant=select_variant_interactive if interactive else None,
        )
    finally:
        download_progress.close()
        merge_progress.close()


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    ap = argparse.ArgumentParser(
        prog="m3u8-merge",
        description="Download an HLS stream and convert it to MP4",
    )
    ap.add_argument("url", help="M3U8 playlist URL or local file")
    ap.add_argument("-o", "--output", type=Path, default=Path("output.mp4"), help="output MP4 path")
    ap.add_argument(
        "-c",
        "--concurrency",
        type=int,
        default=MAX_CONCURRENT_DOWNLOADS,
        help="maximum parallel segment downloads",
    )
    ap.add_argument("-r", "--retries", type=int, default=RETRY_COUNT, help="attempts per segment")
    ap.add_argument("--video-bitrate", type=int, default=0, help="video bitrate in kbps (0 = auto)")
    ap.add_argument("--audio-bitrate", type=int, default=0, help="audio bitrate in kbps (0 = auto)")
    ap.add_argument("--keep-temp", action="store_true", help="keep temporary segment and TS files")
    ap.add_argument("--select", action="store_true", help="choose the variant stream interactively")
    verbosity = ap.add_mutually_exclusive_group()
    verbosity.add_argument("-v", "--verbose", action="store_true", help="debug logging")
    verbosity.add_argument("-q", "--quiet", action="store_true", help="only log warnings and errors")
    return ap.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> None:
    """Program entry point."""
    args = parse_args(argv)

    level = logging.DEBUG if args.verbose else (logging.WARNING if args.quiet else logging.INFO)
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(message)s")

    options = DownloadOptions(
        output=args.output,
        concurrency=args.concurrency,
        retries=args.retries,
        video_bitrate=args.video_bitrate,
        audio_bitrate=args.audio_bitrate,
        keep_temp=args.keep_temp,
    )

    print_banner(options)

    try:
        options.validate()
        check_ffmpeg()

        # Step 1: Download and merge segments (async)
        with logging_redirect_tqdm():
            merged: Path = asyncio.run(run_download(args.url, options, interactive=args.select))

        # Step 2: Convert to MP4 (synchronous)
        convert_to_mp4(merged, options.output, detect_acceleration(), options.video_bitrate, options.audio_bitrate)

        if options.keep_temp:
            print(f"\n📁 Temporary files kept in {merged.parent}")
        else:
            shutil.rmtree(merged.parent, ignore_errors=True)

        print(f"\n✅ Download completed: {options.output}")

    except KeyboardInterrupt:
        print("\n\nDownload cancelled by user.")
        sys.exit(130)
    except M3u8MergeError as e:
        print(f"\n[ERROR] {e}")
        sys.exit(1)
    except Exception as e:
        print(f"\n[ERROR] An error occurred: {e}")
        import traceback

        traceback.print_exc()
        sys.exit(1)


if __name__ == "__main__":
    main()
