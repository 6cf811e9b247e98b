# --- Standard Library Imports ---
import os
import re
import io
import sys
import json
import math
import base64
import asyncio
import argparse
import datetime
import logging
import logging.handlers
from contextlib import AsyncExitStack
from dataclasses import dataclass, fields
from http.cookiejar import CookieJar, MozillaCookieJar
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple
from urllib.parse import unquote_to_bytes, urlparse

# --- Third-Party Imports ---
missing_dependencies: List[str] = []

try:
    from playwright.async_api import async_playwright, Error as PlaywrightError
except ImportError:
    missing_dependencies.append(
        "playwright (pip install playwright && python -m playwright install chromium)"
    )

try:
    from PIL import Image, ImageOps, UnidentifiedImageError
except ImportError:
    missing_dependencies.append("Pillow (pip install Pillow)")

try:
    import requests
except ImportError:
    missing_dependencies.append("requests (pip install requests)")

try:
    from tabulate import tabulate
except ImportError:
    missing_dependencies.append("tabulate (pip install tabulate)")

try:
    from dateutil import parser as date_parser
except ImportError:
    missing_dependencies.append("python-dateutil (pip install python-dateutil)")

if missing_dependencies:
    sys.stderr.write("The following dependencies are missing:\n")
    for package in missing_dependencies:
        sys.stderr.write(f"  - {package}\n")
    sys.stderr.write(
        "\nInstall the packages listed above and rerun this script.\n"
    )
    sys.exit(1)

# --- Local Imports ---
from png_chunks import MalformedPng, embed_text_chunk, read_text_chunks

# --- Configuration Constants ---
LOG_FILE = os.getenv("IMH_LOG_FILE", "image_metahub.log")
OUTPUT_DIR = os.getenv("IMH_OUTPUT_DIR", "saved_images")
FETCH_TIMEOUT_SECONDS = float(os.getenv("IMH_FETCH_TIMEOUT", "20"))
PAGE_TIMEOUT_MS = int(os.getenv("IMH_PAGE_TIMEOUT_MS", "60000"))
USER_AGENT = os.getenv(
    "IMH_USER_AGENT",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120 Safari/537.36",
)
DOWNLOAD_CHUNK_SIZE = 8192
PARAMETERS_KEYWORD = "parameters"
FILENAME_PREFIX = "imh"
PROVIDER_SLUG_MAX_LENGTH = 32
MIN_PROMPT_LENGTH = 8
UI_TEXT_FRAGMENTS = (
    "save to metahub",
    "copy",
    "regenerate",
    "share",
    "report",
    "edit",
    "like",
    "dislike",
    "download",
)
PROMPT_SELECTORS = {
    "ChatGPT": '[data-message-author-role="user"]',
    "Gemini": ".user-query-bubble-with-background .query-text",
}
PNG_WRITABLE_MODES = {"1", "L", "LA", "I", "I;16", "P", "RGB", "RGBA"}
FORM_FIELDS = (
    "prompt", "negative_prompt", "steps", "cfg_scale", "seed", "sampler",
    "model", "provider", "width", "height", "captured_at",
)

# --- Logging Setup ---
logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)

ch = logging.StreamHandler(sys.stdout)
ch.setLevel(logging.INFO)
formatter = logging.Formatter('%(asctime)s - %(levelname)s - %(message)s')
ch.setFormatter(formatter)
logger.addHandler(ch)

fh = logging.handlers.RotatingFileHandler(
    LOG_FILE, maxBytes=10*1024*1024, backupCount=5
)
fh.setLevel(logging.INFO)
fh.setFormatter(formatter)
logger.addHandler(fh)


# --- Errors ---
class AcquisitionExhausted(Exception):
    """Every fetch strategy failed; `attempts` lists the strategies tried, in order."""

    def __init__(self, attempts: Sequence[str]):
        self.attempts = list(attempts)
        super().__init__(f"All fetch strategies failed: {', '.join(self.attempts) or 'none configured'}")


class DecodeFailed(Exception):
    """The image bytes could not be decoded into a raster."""


# --- Data Model ---
@dataclass(frozen=True)
class ImageReference:
    image_url: str
    width: int = 0
    height: int = 0


@dataclass(frozen=True)
class MetadataRecord:
    prompt: str = ""
    negative_prompt: str = ""
    steps: Optional[float] = None
    cfg_scale: Optional[float] = None
    sampler: str = ""
    seed: Optional[float] = None
    model: str = ""
    width: Optional[float] = None
    height: Optional[float] = None
    provider: str = ""
    source_url: str = ""
    image_url: str = ""
    captured_at: str = ""

    def to_dict(self) -> Dict[str, Any]:
        """Sidecar payload; unknown (None) fields are left out."""
        return {
            f.name: getattr(self, f.name)
            for f in fields(self)
            if getattr(self, f.name) is not None
        }


@dataclass(frozen=True)
class AcquiredImage:
    data: bytes
    mime_type: str
    strategy: str = ""


# --- Helper Functions ---
def parse_number(value: Any) -> Optional[float]:
    """
    Coerces a form value to a number.
    Empty, unparsable and non-finite values give None; integral values come back as int.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = value
    else:
        text = str(value).strip()
        # int() and float() accept "1_000"; form fields do not
        if not text or "_" in text:
            return None
        try:
            number = int(text)
        except ValueError:
            try:
                number = float(text)
            except ValueError:
                return None
    if isinstance(number, float):
        if not math.isfinite(number):
            return None
        if number.is_integer():
            return int(number)
    return number


def format_number(value: float) -> str:
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _text(value: Any) -> str:
    return "" if value is None else str(value).strip()


def iso_timestamp(moment: Optional[datetime.datetime] = None) -> str:
    """UTC timestamp with millisecond precision and a Z suffix, e.g. 2026-10-19T08:30:00.123Z."""
    if moment is None:
        moment = datetime.datetime.now(datetime.timezone.utc)
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=datetime.timezone.utc)
    moment = moment.astimezone(datetime.timezone.utc)
    return moment.strftime("%Y-%m-%dT%H:%M:%S.") + f"{moment.microsecond // 1000:03d}Z"


def normalize_captured_at(value: str) -> str:
    """Parses a user-supplied timestamp (naive values are taken as UTC) and returns it in ISO form."""
    return iso_timestamp(date_parser.parse(value))


def slugify(value: str) -> str:
    slug = re.sub(r'[^a-z0-9]+', '-', (value or "").lower()).strip('-')
    return slug[:PROVIDER_SLUG_MAX_LENGTH] or "online"


def build_base_name(record: MetadataRecord) -> str:
    """
    Builds the file name stem shared by the image and its sidecar:
    imh-<provider slug>-<captured_at with ':' and '.' replaced by '-'>.
    """
    timestamp = re.sub(r'[:.]', '-', record.captured_at or iso_timestamp())
    return f"{FILENAME_PREFIX}-{slugify(record.provider or 'online')}-{timestamp}"


def infer_provider(page_url: Optional[str]) -> str:
    host = (urlparse(page_url or "").hostname or "").lower()
    if "chatgpt" in host or "openai" in host:
        return "ChatGPT"
    if "gemini" in host:
        return "Gemini"
    if "grok" in host or "x.ai" in host:
        return "Grok"
    return "Online"


def normalize_mime_type(value: Optional[str]) -> str:
    return (value or "").split(";")[0].strip().lower()


def is_png_mime_type(mime_type: Optional[str]) -> bool:
    return normalize_mime_type(mime_type) == "image/png"


def infer_extension(mime_type: Optional[str], image_url: Optional[str]) -> str:
    """
    Picks the file extension from the MIME type, then from the URL suffix,
    defaulting to png.
    """
    mime_type = normalize_mime_type(mime_type)
    if mime_type == "image/jpeg":
        return "jpg"
    if mime_type == "image/webp":
        return "webp"
    if mime_type == "image/png":
        return "png"

    match = re.search(r'\.(png|jpe?g|webp)(\?|#|$)', image_url or "", re.IGNORECASE)
    if match:
        extension = match.group(1).lower()
        return "jpg" if extension == "jpeg" else extension

    return "png"


def infer_mime_type_from_url(url: Optional[str]) -> str:
    """Guesses the MIME type from the suffix of the URL path; host names and query strings are ignored."""
    match = re.search(r'\.(png|jpe?g|webp)$', urlparse(url or "").path, re.IGNORECASE)
    if not match:
        return ""
    extension = match.group(1).lower()
    if extension == "png":
        return "image/png"
    if extension == "webp":
        return "image/webp"
    return "image/jpeg"


def decode_data_url(url: str) -> Optional[Tuple[bytes, str]]:
    """Decodes a data: URL into (bytes, mime type); returns None if it is not a usable data URL."""
    header, separator, payload = url.partition(",")
    if not separator or not header.lower().startswith("data:"):
        return None
    mime_type = normalize_mime_type(header[5:])
    try:
        if header.lower().endswith(";base64"):
            data = base64.b64decode(payload)
        else:
            data = unquote_to_bytes(payload)
    except ValueError as e:
        logger.warning(f"Could not decode data URL: {e}")
        return None
    return data, mime_type


def clean_prompt_text(text: Optional[str]) -> str:
    """
    Normalizes scraped page text into a prompt candidate.
    Short snippets and text that looks like UI chrome ("Copy", "Regenerate", ...) are rejected.
    """
    text = (text or "").strip()
    if len(text) < MIN_PROMPT_LENGTH:
        return ""
    cleaned = re.sub(r'\s+', ' ', text)
    lower = cleaned.lower()
    if any(fragment in lower for fragment in UI_TEXT_FRAGMENTS):
        return ""
    return cleaned


def build_metadata_record(
    image_ref: ImageReference,
    form: Dict[str, Any],
    source_url: str = "",
    captured_at: Optional[str] = None
) -> MetadataRecord:
    """
    Builds the metadata record for one save from raw form values.
    Width/height fall back to the image reference hints and the provider to the page host.
    """
    width = parse_number(form.get("width"))
    if width is None and image_ref.width:
        width = image_ref.width
    height = parse_number(form.get("height"))
    if height is None and image_ref.height:
        height = image_ref.height

    raw_captured_at = captured_at or _text(form.get("captured_at"))
    if raw_captured_at:
        try:
            captured_at = normalize_captured_at(raw_captured_at)
        except (ValueError, OverflowError) as e:
            logger.warning(f"Could not parse capture time '{raw_captured_at}', using current time: {e}")
            captured_at = iso_timestamp()
    else:
        captured_at = iso_timestamp()

    return MetadataRecord(
        prompt=_text(form.get("prompt")),
        negative_prompt=_text(form.get("negative_prompt")),
        steps=parse_number(form.get("steps")),
        cfg_scale=parse_number(form.get("cfg_scale")),
        sampler=_text(form.get("sampler")),
        seed=parse_number(form.get("seed")),
        model=_text(form.get("model")),
        width=width,
        height=height,
        provider=_text(form.get("provider")) or infer_provider(source_url),
        source_url=source_url or "",
        image_url=image_ref.image_url,
        captured_at=captured_at,
    )


def build_parameters_string(record: MetadataRecord) -> str:
    """
    Serializes the record in the "parameters" text convention read by
    Stable Diffusion metadata viewers:

        <prompt>
        Negative prompt: <negative prompt>
        Steps: 30, Sampler: Euler a, CFG scale: 7.5, Seed: 1, Size: 512x512, Model: m, Generator: p

    Missing fields are dropped entirely; the order of the parameter line is fixed.
    """
    params = []
    if record.steps:
        params.append(f"Steps: {format_number(record.steps)}")
    if record.sampler:
        params.append(f"Sampler: {record.sampler}")
    if record.cfg_scale:
        params.append(f"CFG scale: {format_number(record.cfg_scale)}")
    if record.seed is not None:
        params.append(f"Seed: {format_number(record.seed)}")
    if record.width and record.height:
        params.append(f"Size: {format_number(record.width)}x{format_number(record.height)}")
    if record.model:
        params.append(f"Model: {record.model}")
    if record.provider:
        params.append(f"Generator: {record.provider}")

    lines = [(record.prompt or "").strip()]
    negative = (record.negative_prompt or "").strip()
    if negative:
        lines.append(f"Negative prompt: {negative}")
    if params:
        lines.append(", ".join(params))
    return "\n".join(line for line in lines if line)


# --- Format Normalization ---
def _reencode_as_png(data: bytes) -> bytes:
    try:
        with Image.open(io.BytesIO(data)) as img:
            img.load()
            img = ImageOps.exif_transpose(img)
            if img.mode not in PNG_WRITABLE_MODES:
                img = img.convert("RGBA" if "A" in img.getbands() else "RGB")
            buffer = io.BytesIO()
            img.save(buffer, format="PNG")
            return buffer.getvalue()
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError, SyntaxError) as e:
        raise DecodeFailed(str(e)) from e


def to_png(data: bytes, mime_type: Optional[str]) -> Optional[bytes]:
    """
    Returns PNG bytes for the image, or None when it cannot be decoded.
    PNG input is returned as-is without re-encoding.
    """
    if is_png_mime_type(mime_type):
        return data
    logger.info(f"Converting {normalize_mime_type(mime_type) or 'unknown'} image ({len(data)} bytes) to PNG.")
    try:
        return _reencode_as_png(data)
    except DecodeFailed as e:
        logger.warning(f"Could not convert image to PNG, keeping original bytes: {e}")
        return None


# --- Image Acquisition ---
Strategy = Tuple[str, Callable[[], Awaitable[Optional[Any]]]]


async def first_success(attempts: Sequence[Strategy]) -> Any:
    """
    Runs the strategies in order and returns the first non-None result.
    A strategy that raises or returns None hands over to the next one;
    AcquisitionExhausted is raised once all of them have been tried.
    """
    tried = []
    for name, attempt in attempts:
        tried.append(name)
        try:
            result = await attempt()
        except Exception as e:
            logger.warning(f"Fetch strategy '{name}' failed: {e}")
            continue
        if result is None:
            logger.info(f"Fetch strategy '{name}' returned no image, trying next strategy.")
            continue
        logger.info(f"Fetch strategy '{name}' succeeded.")
        return result
    raise AcquisitionExhausted(tried)


class ImageAcquirer:
    """
    Fetches image bytes for a URL, trying in order:

    1. a direct request without cookies (public CDN images),
    2. a direct request carrying the page session cookies and Referer,
    3. the privileged relay, when one is configured.
    """

    def __init__(
        self,
        cookies: Optional[CookieJar] = None,
        relay: Optional[Any] = None,
        referer: Optional[str] = None,
        timeout: float = FETCH_TIMEOUT_SECONDS,
        session_factory: Optional[Callable[[], Any]] = None
    ):
        self.cookies = cookies
        self.relay = relay
        self.referer = referer
        self.timeout = timeout
        self.session_factory = session_factory or requests.Session

    def strategies(self, image_url: str) -> List[Strategy]:
        attempts: List[Strategy] = [
            ("direct-omit-credentials", lambda: asyncio.to_thread(self._fetch_direct, image_url, False)),
            ("direct-include-credentials", lambda: asyncio.to_thread(self._fetch_direct, image_url, True)),
        ]
        if self.relay is not None:
            attempts.append(("privileged-relay", lambda: self._fetch_via_relay(image_url)))
        return attempts

    async def acquire(self, image_url: str) -> AcquiredImage:
        logger.info(f"Acquiring image bytes from: {image_url[:200]}")
        return await first_success(self.strategies(image_url))

    def _fetch_direct(self, image_url: str, include_credentials: bool) -> Optional[AcquiredImage]:
        strategy = "direct-include-credentials" if include_credentials else "direct-omit-credentials"
        if image_url.lower().startswith("data:"):
            decoded = decode_data_url(image_url)
            if decoded is None or not decoded[0]:
                return None
            return AcquiredImage(decoded[0], decoded[1], strategy)

        headers = {"User-Agent": USER_AGENT}
        cookies = None
        if include_credentials:
            cookies = self.cookies
            if self.referer:
                headers["Referer"] = self.referer

        session = self.session_factory()
        try:
            response = session.get(image_url, headers=headers, cookies=cookies, timeout=self.timeout)
            if not response.ok:
                logger.info(f"Direct fetch ({strategy}) returned HTTP {response.status_code}.")
                return None
            data = response.content
            if not data:
                return None
            mime_type = (
                normalize_mime_type(response.headers.get("Content-Type"))
                or infer_mime_type_from_url(image_url)
            )
            return AcquiredImage(data, mime_type, strategy)
        finally:
            session.close()

    async def _fetch_via_relay(self, image_url: str) -> Optional[AcquiredImage]:
        response = await asyncio.wait_for(self.relay.fetch(image_url), timeout=self.timeout)
        if not response or not response.get("ok") or not response.get("bytes"):
            error = (response or {}).get("error", "no response")
            logger.info(f"Privileged relay could not fetch the image: {error}")
            return None
        mime_type = normalize_mime_type(response.get("mime_type")) or infer_mime_type_from_url(image_url)
        return AcquiredImage(bytes(response["bytes"]), mime_type, "privileged-relay")


class PlaywrightRelay:
    """
    Fetches images from a Playwright request context. Requests made this way
    are not bound by the page's CORS or CSP rules and can reuse a saved
    browser session (storage_state).
    """

    def __init__(self, storage_state: Optional[str] = None, timeout: float = FETCH_TIMEOUT_SECONDS):
        self.storage_state = storage_state
        self.timeout = timeout
        self._playwright = None
        self._request_context = None

    async def __aenter__(self):
        self._playwright = await async_playwright().start()
        try:
            self._request_context = await self._playwright.request.new_context(
                storage_state=self.storage_state,
                user_agent=USER_AGENT,
                ignore_https_errors=True,
            )
        except Exception:
            await self._playwright.stop()
            self._playwright = None
            raise
        logger.info("Privileged relay started.")
        return self

    async def __aexit__(self, exc_type, exc, tb):
        if self._request_context is not None:
            await self._request_context.dispose()
            self._request_context = None
        if self._playwright is not None:
            await self._playwright.stop()
            self._playwright = None

    async def fetch(self, url: str) -> Dict[str, Any]:
        if not url:
            return {"ok": False, "error": "missing-url"}
        if self._request_context is None:
            return {"ok": False, "error": "relay-not-started"}
        try:
            response = await self._request_context.get(url, timeout=self.timeout * 1000)
            if not response.ok:
                return {"ok": False, "error": f"HTTP {response.status}"}
            body = await response.body()
            return {"ok": True, "bytes": body, "mime_type": response.headers.get("content-type", "")}
        except PlaywrightError as e:
            return {"ok": False, "error": str(e)}


async def guess_prompt_from_page(
    page_url: str,
    provider: str,
    storage_state: Optional[str] = None
) -> str:
    """
    Best-effort lookup of the last user prompt on a chat-style generator page.
    Returns an empty string when nothing usable is found; never raises.
    """
    selector = PROMPT_SELECTORS.get(provider)
    if not selector or not page_url:
        return ""

    logger.info(f"Looking for a {provider} prompt on: {page_url}")
    try:
        async with async_playwright() as p:
            browser = await p.chromium.launch(headless=True)
            try:
                context = await browser.new_context(storage_state=storage_state, user_agent=USER_AGENT)
                page = await context.new_page()
                await page.goto(page_url, wait_until="domcontentloaded", timeout=PAGE_TIMEOUT_MS)
                locator = page.locator(selector)
                count = await locator.count()
                for index in reversed(range(count)):
                    try:
                        text = clean_prompt_text(await locator.nth(index).inner_text(timeout=3000))
                    except PlaywrightError as e:
                        logger.debug(f"Prompt candidate {index} unreadable: {e}")
                        continue
                    if text:
                        logger.info(f"Found prompt: {text[:80]}")
                        return text
            finally:
                await browser.close()
    except Exception as e:
        logger.warning(f"Prompt lookup failed for {page_url}: {e}")
    return ""


# --- Persistence ---
def unique_path(path: Path) -> Path:
    """Returns `path`, or `name (n).ext` when that file already exists."""
    candidate = path
    counter = 1
    while candidate.exists():
        candidate = path.with_name(f"{path.stem} ({counter}){path.suffix}")
        counter += 1
    return candidate


class DirectoryPersistence:
    """Saves named blobs into an output directory without overwriting existing files."""

    def __init__(self, output_dir: Path):
        self.output_dir = Path(output_dir)

    def save(self, filename: str, data: bytes, mime_type: str) -> Path:
        self.output_dir.mkdir(parents=True, exist_ok=True)
        output_path = unique_path(self.output_dir / filename)
        with open(output_path, "wb") as f:
            f.write(data)
        logger.info(f"Saved {mime_type} ({len(data)} bytes) to: {output_path}")
        return output_path


class RemoteDownloader:
    """
    Downloads a URL straight to disk without handling its bytes in the pipeline.
    Used when no fetch strategy could hand the image bytes back.
    """

    def __init__(
        self,
        output_dir: Path,
        cookies: Optional[CookieJar] = None,
        referer: Optional[str] = None,
        timeout: float = FETCH_TIMEOUT_SECONDS
    ):
        self.output_dir = Path(output_dir)
        self.cookies = cookies
        self.referer = referer
        self.timeout = timeout

    def download(self, url: str, filename: str) -> Optional[Path]:
        self.output_dir.mkdir(parents=True, exist_ok=True)
        output_path = unique_path(self.output_dir / filename)
        logger.info(f"Attempting direct download from: {url[:200]}")

        if url.lower().startswith("data:"):
            decoded = decode_data_url(url)
            if decoded is None:
                logger.error("Direct download failed: malformed data URL.")
                return None
            output_path.write_bytes(decoded[0])
            return output_path

        headers = {"User-Agent": USER_AGENT}
        if self.referer:
            headers["Referer"] = self.referer
        try:
            response = requests.get(
                url, headers=headers, cookies=self.cookies, timeout=self.timeout, stream=True
            )
            response.raise_for_status()
            with open(output_path, 'wb') as f:
                for chunk in response.iter_content(chunk_size=DOWNLOAD_CHUNK_SIZE):
                    f.write(chunk)
            logger.info(f"Downloaded image to: {output_path}")
            return output_path
        except (requests.exceptions.RequestException, OSError) as e:
            logger.error(f"Direct download from {url[:200]} failed: {e}")
            if output_path.exists():
                output_path.unlink()
            return None


# --- Artifact Writer ---
def save_sidecar(persistence: DirectoryPersistence, base_name: str, record: MetadataRecord) -> Path:
    payload = json.dumps(record.to_dict(), indent=2, ensure_ascii=False)
    return persistence.save(f"{base_name}.json", payload.encode("utf-8"), "application/json")


def _try_save_sidecar(
    persistence: DirectoryPersistence,
    base_name: str,
    record: MetadataRecord,
    result: Dict[str, Any]
) -> None:
    """Writes the sidecar into `result`; a failed write is logged and leaves the image result intact."""
    try:
        result["Sidecar Filename"] = save_sidecar(persistence, base_name, record).name
    except OSError as e:
        logger.error(f"Could not write metadata sidecar for {base_name}: {e}")


async def save_with_metadata(
    image_ref: ImageReference,
    record: MetadataRecord,
    acquirer: ImageAcquirer,
    persistence: DirectoryPersistence,
    downloader: RemoteDownloader,
    sidecar_fallback: bool = True
) -> Dict[str, Any]:
    """
    Saves one image with its metadata and reports what was written.

    - bytes fetched and PNG available: PNG with an embedded "parameters" tEXt chunk
    - bytes fetched but not convertible: original bytes plus a JSON sidecar
    - bytes not fetched: URL handed to the downloader plus a JSON sidecar

    Failures degrade to the next output mode and are never raised.
    """
    image_url = image_ref.image_url
    base_name = build_base_name(record)
    result = {
        "Image URL": image_url,
        "Status": "Failed",
        "Output Filename": "N/A",
        "Sidecar Filename": "N/A",
        "Message": "",
    }
    sidecar_attempted = False

    try:
        try:
            acquired = await acquirer.acquire(image_url)
        except AcquisitionExhausted as e:
            logger.warning(f"{e}. Handing the URL to the direct downloader.")
            output_path = await asyncio.to_thread(
                downloader.download, image_url, f"{base_name}.{infer_extension(None, image_url)}"
            )
            if output_path is None:
                result["Message"] = "Failed to save image (download blocked)"
            else:
                result.update({
                    "Status": "Direct Download",
                    "Output Filename": output_path.name,
                    "Message": "Saved image (metadata unavailable: fetch blocked)",
                })
            if sidecar_fallback:
                sidecar_attempted = True
                _try_save_sidecar(persistence, base_name, record, result)
            return result

        logger.info(
            f"Fetched {len(acquired.data)} bytes ({acquired.mime_type or 'unknown type'}) "
            f"via {acquired.strategy or 'unknown strategy'}."
        )
        extension = infer_extension(acquired.mime_type, image_url)
        png_bytes = await asyncio.to_thread(to_png, acquired.data, acquired.mime_type)
        message = "Saved image (non-PNG, metadata not embedded)"

        if png_bytes is not None:
            try:
                embedded = embed_text_chunk(png_bytes, PARAMETERS_KEYWORD, build_parameters_string(record))
            except MalformedPng as e:
                logger.warning(f"Could not embed metadata: {e}")
                message = "Saved image (malformed PNG, metadata not embedded)"
            else:
                output_path = persistence.save(f"{base_name}.png", embedded, "image/png")
                result.update({
                    "Status": "Embedded",
                    "Output Filename": output_path.name,
                    "Message": "Saved PNG with embedded metadata",
                })
                return result

        output_path = persistence.save(
            f"{base_name}.{extension}", acquired.data, acquired.mime_type or "application/octet-stream"
        )
        result.update({
            "Status": "Not Embedded",
            "Output Filename": output_path.name,
            "Message": message,
        })
        if sidecar_fallback:
            sidecar_attempted = True
            _try_save_sidecar(persistence, base_name, record, result)
        return result

    except Exception as e:
        logger.error(f"Failed to save image {image_url[:200]}: {e}", exc_info=True)
        result["Status"] = "Failed"
        result["Output Filename"] = "N/A"
        result["Message"] = "Failed to save image"
        if sidecar_fallback and not sidecar_attempted:
            _try_save_sidecar(persistence, base_name, record, result)
        return result


# --- Command Line ---
def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Save generated images with their generation metadata embedded as PNG text."
    )
    parser.add_argument("image_urls", nargs="*", metavar="IMAGE_URL", help="Image URL(s) to save")
    parser.add_argument("--page-url", default="", help="Page the image was found on")
    parser.add_argument("--jobs", help="JSON file with a list of jobs (image_url, page_url and metadata fields)")
    parser.add_argument("--output-dir", default=OUTPUT_DIR, help="Directory to save images into")
    parser.add_argument("--cookies", help="Netscape cookies.txt used for credentialed requests")
    parser.add_argument("--storage-state", help="Playwright storage state file for the relay and prompt lookup")
    parser.add_argument("--no-relay", action="store_true", help="Do not use the privileged relay")
    parser.add_argument("--no-sidecar", action="store_true", help="Do not write a .json sidecar when embedding fails")
    parser.add_argument("--guess-prompt", action="store_true", help="Try to read the prompt from the page when none is given")
    parser.add_argument("--show-parameters", metavar="PNG", help="Print the embedded parameters of a PNG and exit")

    metadata = parser.add_argument_group("metadata")
    metadata.add_argument("--prompt", default="")
    metadata.add_argument("--negative-prompt", default="")
    metadata.add_argument("--steps")
    metadata.add_argument("--cfg-scale")
    metadata.add_argument("--seed")
    metadata.add_argument("--sampler", default="")
    metadata.add_argument("--model", default="")
    metadata.add_argument("--provider", default="")
    metadata.add_argument("--width")
    metadata.add_argument("--height")
    metadata.add_argument("--captured-at", help="Capture time (any format python-dateutil understands)")
    return parser.parse_args(argv)


def load_jobs(args: argparse.Namespace) -> List[Dict[str, Any]]:
    """
    Collects save jobs from the command line and the optional jobs file.
    Each job is {"image_url", "page_url", "form"} where form holds the raw metadata values.
    """
    jobs = []
    form = {name: getattr(args, name) for name in FORM_FIELDS}
    for image_url in args.image_urls:
        jobs.append({"image_url": image_url, "page_url": args.page_url, "form": dict(form)})

    if args.jobs:
        with open(args.jobs, 'r', encoding='utf-8') as f:
            entries = json.load(f)
        if not isinstance(entries, list):
            raise ValueError(f"{args.jobs} must contain a JSON list of jobs")
        for index, entry in enumerate(entries):
            if not isinstance(entry, dict) or not _text(entry.get("image_url")):
                logger.warning(f"Skipping job {index} in {args.jobs}: missing image_url")
                continue
            jobs.append({
                "image_url": _text(entry["image_url"]),
                "page_url": _text(entry.get("page_url")) or args.page_url,
                "form": {name: entry.get(name) for name in FORM_FIELDS},
            })
    return jobs


def load_cookies(path: str) -> MozillaCookieJar:
    jar = MozillaCookieJar(path)
    jar.load(ignore_discard=True, ignore_expires=True)
    logger.info(f"Loaded {len(jar)} cookie(s) from: {path}")
    return jar


def _size_hint(value: Any) -> int:
    number = parse_number(value)
    return int(number) if number and number > 0 else 0


def print_summary(results: List[Dict[str, Any]], output_dir: Path):
    print("\n--- Image MetaHub Save Summary ---")
    headers = ["Image URL", "Status", "Output Filename", "Sidecar Filename", "Message"]
    table_data = []
    for res in results:
        url = res.get("Image URL", "N/A")
        table_data.append([
            url if len(url) <= 80 else url[:77] + "...",
            res.get("Status", "N/A"),
            res.get("Output Filename", "N/A"),
            res.get("Sidecar Filename", "N/A"),
            res.get("Message", "N/A"),
        ])
    print(tabulate(table_data, headers=headers, tablefmt="grid"))
    print(f"\nSaved files are in: {output_dir.resolve()}")


def show_parameters(png_path: str) -> int:
    texts = read_text_chunks(Path(png_path).read_bytes())
    if PARAMETERS_KEYWORD not in texts:
        print(f"No embedded {PARAMETERS_KEYWORD} found in {png_path}")
        return 1
    print(texts[PARAMETERS_KEYWORD])
    return 0


async def run_main_script(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    if args.show_parameters:
        return show_parameters(args.show_parameters)

    try:
        jobs = load_jobs(args)
        cookies = load_cookies(args.cookies) if args.cookies else None
    except (OSError, ValueError) as exc:
        logger.critical(f"Could not load input: {exc}", exc_info=True)
        return 1
    if not jobs:
        logger.error("No image URLs given. Pass IMAGE_URL arguments or --jobs FILE.")
        return 1

    output_dir = Path(args.output_dir)
    persistence = DirectoryPersistence(output_dir)
    results: List[Dict[str, Any]] = []

    async with AsyncExitStack() as stack:
        relay = None
        if not args.no_relay:
            try:
                relay = await stack.enter_async_context(PlaywrightRelay(storage_state=args.storage_state))
            except Exception as e:
                logger.warning(f"Privileged relay unavailable, continuing without it: {e}")

        for job in jobs:
            page_url = job["page_url"]
            form = dict(job["form"])
            image_ref = ImageReference(job["image_url"], _size_hint(form.get("width")), _size_hint(form.get("height")))
            if args.guess_prompt and not _text(form.get("prompt")):
                provider = _text(form.get("provider")) or infer_provider(page_url)
                form["prompt"] = await guess_prompt_from_page(page_url, provider, args.storage_state)

            record = build_metadata_record(image_ref, form, source_url=page_url)
            referer = page_url or None
            result = await save_with_metadata(
                image_ref,
                record,
                acquirer=ImageAcquirer(cookies=cookies, relay=relay, referer=referer),
                persistence=persistence,
                downloader=RemoteDownloader(output_dir, cookies=cookies, referer=referer),
                sidecar_fallback=not args.no_sidecar,
            )
            logger.info(f"{result['Status']}: {result['Message']}")
            results.append(result)

    print_summary(results, output_dir)
    return 0 if all(res["Status"] != "Failed" for res in results) else 1


def main():
    sys.exit(asyncio.run(run_main_script()))


# --- Entry point for the script ---
if __name__ == "__main__":
    main()
