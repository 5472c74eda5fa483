# /// script
# requires-python = ">=3.10"
# dependencies = [
#   "httpx~=0.28.0",
#   "tqdm",
#   "humanize"
# ]
# ///

"""
Downloads emoji-pack metadata and images from the pack content service.

Three modes:
- `bf` scans a range of pack ids and saves each pack's raw metadata json.
- `rip` downloads every image of one pack into `<id> - <mark>/`.
- `mass-rip-first` reads previously saved metadata files and downloads the first image of each pack.

All HTTP requests are serial (one-by-one). Connection and I/O failures are retried once, immediately.

Usage:
  uv run ./rip_emoji_packs.py bf --start 1 --end 500 --out-dir ../metadata
  uv run ./rip_emoji_packs.py rip --id 42 --out-dir ../packs
  uv run ./rip_emoji_packs.py mass-rip-first --in-dir ../metadata --out-dir ../firsts

Args (all modes):
  --proxy (optional) -- eg `http://127.0.0.1:8080`; defaults to env var EMOJI_PACK_PROXY
  --out-dir (optional) -- defaults to the current directory
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from pathlib import Path
from typing import TypeVar

import httpx
import humanize
from tqdm import tqdm

## setup logging ----------------------------------------------------
log_level_name: str = os.getenv('LOG_LEVEL', 'INFO').upper()
log_level = getattr(
    logging, log_level_name, logging.INFO
)  # maps the string name to the corresponding logging level constant; defaults to INFO
logging.basicConfig(
    level=log_level,
    format='[%(asctime)s] %(levelname)s [%(module)s-%(funcName)s()::%(lineno)d] %(message)s',
    datefmt='%d/%b/%Y %H:%M:%S',
)
log = logging.getLogger(__name__)
## prevent httpx from logging
if log_level <= logging.INFO:
    for noisy in ('httpx', 'httpcore'):
        lg = logging.getLogger(noisy)
        lg.setLevel(logging.WARNING)
        lg.propagate = False  # don't bubble up to root


## constants --------------------------------------------------------
PRIMARY_METADATA_URL_TPL = 'https://i.gtimg.cn/club/item/parcel/{shard}/{pack_id}_android.json'
MIRROR_METADATA_URL_TPL = 'https://gxh.vip.qq.com/club/item/parcel/{shard}/{pack_id}_android.json'
IMAGE_URL_TPL = 'https://i.gtimg.cn/club/item/parcel/item/{prefix}/{asset_id}/{size}.png'

## the mirror host resolves to the same service; it still finds packs the primary misses
METADATA_URL_TEMPLATES: tuple[str, ...] = (PRIMARY_METADATA_URL_TPL, MIRROR_METADATA_URL_TPL)

## plenty of APIs block blank or library user-agents
USER_AGENT = (
    'Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/108.0.0.0 Safari/537.36'
)
REQUEST_TIMEOUT_SECONDS = 15.0
MAX_PACK_ID = 2**32 - 1  # ids are u32 on the service side
PROXY_ENV_VAR = 'EMOJI_PACK_PROXY'

## ordered by preference
KNOWN_SIZE_VARIANTS: tuple[tuple[int, int], ...] = ((300, 300), (200, 200))

## connection + i/o failures; everything else (status errors, bad payloads) is final
TRANSIENT_ERRORS: tuple[type[Exception], ...] = (httpx.NetworkError, httpx.TimeoutException)


## errors -----------------------------------------------------------
class PackToolError(Exception):
    """
    Base class for errors raised by this tool (network errors stay httpx errors).
    """


class ConfigurationError(PackToolError):
    """
    Invalid range, invalid proxy, etc. Raised before any network activity.
    """


class MetadataDecodeError(PackToolError):
    """
    Pack metadata is malformed or missing required fields.
    """


class UnsupportedSizeError(PackToolError):
    """
    The pack offers neither of the known square size variants.
    """

    def __init__(self, pack_id: int, supported_sizes: Iterable[Size]) -> None:
        self.pack_id: int = pack_id
        self.supported_sizes: tuple[Size, ...] = tuple(supported_sizes)
        sizes_display: str = ', '.join(s.label for s in self.supported_sizes) or '(none)'
        super().__init__(f'no known supported size for pack {pack_id}; supported sizes: {sizes_display}')


class MissingImageError(PackToolError):
    """
    The pack has no images where at least one is required.
    """

    def __init__(self, pack_id: int) -> None:
        self.pack_id: int = pack_id
        super().__init__(f'missing first image for pack {pack_id}')


## data model -------------------------------------------------------
@dataclass(frozen=True)
class Size:
    width: int
    height: int

    @property
    def label(self) -> str:
        return f'{self.width}x{self.height}'

    @classmethod
    def from_json(cls, size_json: object) -> Size:
        if not isinstance(size_json, dict):
            raise MetadataDecodeError(f'size entry is not an object: {size_json!r}')
        width: object = _first_present(size_json, 'Width', 'width')
        height: object = _first_present(size_json, 'Height', 'height')
        if not _is_plain_int(width) or not _is_plain_int(height):
            raise MetadataDecodeError(f'size entry needs integer width/height: {size_json!r}')
        return cls(width=width, height=height)  # type: ignore[arg-type]


@dataclass(frozen=True)
class Image:
    name: str
    asset_id: str

    @property
    def shard_prefix(self) -> str:
        return self.asset_id[:2]

    @classmethod
    def from_json(cls, image_json: object) -> Image:
        if not isinstance(image_json, dict):
            raise MetadataDecodeError(f'image entry is not an object: {image_json!r}')
        name: object = image_json.get('name')
        asset_id: object = image_json.get('id')
        if not isinstance(name, str):
            raise MetadataDecodeError(f'image entry needs a string `name`: {image_json!r}')
        if not isinstance(asset_id, str) or len(asset_id) < 2:
            raise MetadataDecodeError(f'image entry needs a string `id` of at least 2 chars: {image_json!r}')
        return cls(name=name, asset_id=asset_id)


@dataclass(frozen=True)
class Pack:
    """
    One emoji pack, as described by its metadata json.
    - `images` keeps the service's order; batch mode relies on the first one.
    - `supported_sizes` is kept verbatim, duplicates and all.
    """

    id: int
    mark: str
    images: tuple[Image, ...] = field(default_factory=tuple)
    supported_sizes: tuple[Size, ...] = field(default_factory=tuple)

    def supports(self, width: int, height: int) -> bool:
        return any(s.width == width and s.height == height for s in self.supported_sizes)

    @classmethod
    def from_json(cls, pack_json: object) -> Pack:
        """
        Builds a Pack from the metadata dict.
        The service sends `id` as either a number or a digit-string, so both are accepted.
        """
        if not isinstance(pack_json, dict):
            raise MetadataDecodeError('pack metadata is not a json object')
        pack_id: int = _coerce_pack_id(pack_json.get('id'))
        mark: object = pack_json.get('mark')
        if not isinstance(mark, str):
            raise MetadataDecodeError(f'pack {pack_id} needs a string `mark`')
        imgs: object = _first_present(pack_json, 'imgs', 'images')
        sizes: object = _first_present(pack_json, 'supportSize', 'supportedSizes')
        if not isinstance(imgs, list):
            raise MetadataDecodeError(f'pack {pack_id} needs an `imgs` list')
        if not isinstance(sizes, list):
            raise MetadataDecodeError(f'pack {pack_id} needs a `supportSize` list')
        return cls(
            id=pack_id,
            mark=mark,
            images=tuple(Image.from_json(entry) for entry in imgs),
            supported_sizes=tuple(Size.from_json(entry) for entry in sizes),
        )


def decode_pack(payload: bytes | str) -> Pack:
    """
    Parses a metadata payload into a Pack.
    Called by: PackRipper.rip(), FirstImageBatchFetcher.process_file()
    """
    try:
        pack_json: object = json.loads(payload)
    except ValueError as exc:  # JSONDecodeError, UnicodeDecodeError, oversized int literals
        raise MetadataDecodeError(f'metadata is not valid json: {exc}') from exc
    return Pack.from_json(pack_json)


def _coerce_pack_id(val: object) -> int:
    if isinstance(val, str) and val.isascii() and val.isdigit() and len(val) <= len(str(MAX_PACK_ID)):
        val = int(val)
    if _is_plain_int(val) and 0 <= val <= MAX_PACK_ID:  # type: ignore[operator]
        return val  # type: ignore[return-value]
    raise MetadataDecodeError(f'pack `id` is not an integer in 0..{MAX_PACK_ID}: {str(val)[:40]!r}')


def _is_plain_int(val: object) -> bool:
    return isinstance(val, int) and not isinstance(val, bool)


def _first_present(dct: dict, *keys: str) -> object:
    """
    Returns the value of the first key present in `dct`, else None.
    """
    for key in keys:
        if key in dct:
            return dct[key]
    return None


## size variants ----------------------------------------------------
def resolve_size_variant(pack: Pack) -> str:
    """
    Returns the size label to request for every image of the pack, eg '300x300'.
    300x300 wins over 200x200; any other profile raises UnsupportedSizeError.
    """
    for width, height in KNOWN_SIZE_VARIANTS:
        if pack.supports(width, height):
            return f'{width}x{height}'
    raise UnsupportedSizeError(pack.id, pack.supported_sizes)


## http -------------------------------------------------------------
@dataclass(frozen=True)
class ClientSettings:
    """
    Immutable http configuration handed to each mode.
    """

    user_agent: str = USER_AGENT
    timeout_s: float = REQUEST_TIMEOUT_SECONDS
    proxy: str | None = None


def validate_proxy(proxy: str) -> httpx.Proxy:
    """
    Parses the proxy url; raises ConfigurationError if it isn't usable.
    """
    try:
        parsed = httpx.Proxy(proxy)
    except (ValueError, httpx.InvalidURL) as exc:
        raise ConfigurationError(f'invalid proxy ``{proxy}``: {exc}') from exc
    if not parsed.url.host:
        raise ConfigurationError(f'invalid proxy ``{proxy}``: no host')
    return parsed


def build_client(settings: ClientSettings, transport: httpx.BaseTransport | None = None) -> httpx.Client:
    """
    Builds the shared httpx client: fixed user-agent, fixed timeout, optional proxy.
    `transport` lets tests swap in an httpx.MockTransport.
    """
    proxy: httpx.Proxy | None = validate_proxy(settings.proxy) if settings.proxy else None
    headers: dict[str, str] = {'User-Agent': settings.user_agent}
    return httpx.Client(
        headers=headers,
        timeout=httpx.Timeout(settings.timeout_s),
        proxy=proxy,
        transport=transport,
        follow_redirects=True,
    )


class UrlBuilder:
    """
    Builds metadata and image urls; templates are overridable for testing.
    """

    def __init__(
        self,
        metadata_url_templates: tuple[str, ...] = METADATA_URL_TEMPLATES,
        image_url_tpl: str = IMAGE_URL_TPL,
    ) -> None:
        self.metadata_url_templates: tuple[str, ...] = metadata_url_templates
        self.image_url_tpl: str = image_url_tpl

    def metadata_urls(self, pack_id: int) -> list[str]:
        """
        Candidate metadata urls for the pack, in the order they should be tried.
        """
        shard: int = pack_id % 10
        return [tpl.format(shard=shard, pack_id=pack_id) for tpl in self.metadata_url_templates]

    def primary_metadata_url(self, pack_id: int) -> str:
        return self.metadata_urls(pack_id)[0]

    def image_url(self, image: Image, size: str) -> str:
        return self.image_url_tpl.format(prefix=image.shard_prefix, asset_id=image.asset_id, size=size)


T = TypeVar('T')


class PackApiClient:
    """
    Wraps every GET the tool makes with the same retry policy.
    - Connection and I/O failures (incl. timeouts) get exactly one immediate retry.
    - Status errors and anything else are raised right away.
    - A second transient failure is raised to the caller.
    """

    def __init__(self, client: httpx.Client) -> None:
        self.client: httpx.Client = client

    def _call_with_retry(self, url: str, action: Callable[[], T]) -> T:
        try:
            return action()
        except TRANSIENT_ERRORS as exc:
            log.warning(f'transient failure for ``{url}``: {exc!r}; retrying once')
        return action()

    def get_with_retry(self, url: str) -> httpx.Response:
        def _get() -> httpx.Response:
            resp: httpx.Response = self.client.get(url)
            resp.raise_for_status()
            return resp

        return self._call_with_retry(url, _get)

    def download_into(self, url: str, buffer: bytearray) -> int:
        """
        Streams the url's body into `buffer`, replacing its contents; returns the byte count.
        """

        def _stream() -> int:
            buffer.clear()
            with self.client.stream('GET', url) as resp:
                resp.raise_for_status()
                for chunk in resp.iter_bytes():
                    buffer.extend(chunk)
            return len(buffer)

        return self._call_with_retry(url, _stream)

    def fetch_first_available(self, urls: Iterable[str]) -> bytes:
        """
        Tries each url in order (each with its own retry); returns the first successful body.
        Raises the last error if every url fails.
        """
        last_exc: httpx.HTTPError | None = None
        for url in urls:
            try:
                return self.get_with_retry(url).content
            except httpx.HTTPError as exc:
                log.debug(f'failed to load ``{url}``: {exc!r}')
                last_exc = exc
        if last_exc is None:
            raise ValueError('no urls given')
        raise last_exc


## modes ------------------------------------------------------------
@dataclass
class EnumerationResult:
    saved: list[int] = field(default_factory=list)
    skipped: list[int] = field(default_factory=list)


class PackEnumerator:
    """
    Scans a range of pack ids and saves each pack's raw metadata json.
    - Tries the primary endpoint, then the mirror; each request has its own transient retry.
    - An id where every endpoint fails is logged and skipped; the scan always reaches the end.
    - Saves the response bytes verbatim as `<out_dir>/<id>.json`; nothing is decoded here.
    """

    def __init__(self, api: PackApiClient, urls: UrlBuilder, out_dir: Path) -> None:
        self.api = api
        self.urls = urls
        self.out_dir = out_dir

    def run(self, start: int, end: int) -> EnumerationResult:
        validate_range(start, end)
        self.out_dir.mkdir(parents=True, exist_ok=True)
        result = EnumerationResult()
        for pack_id in tqdm(range(start, end + 1), total=end - start + 1, desc='Scanning pack ids'):
            log.debug(f'grabbing {pack_id}')
            try:
                payload: bytes = self.api.fetch_first_available(self.urls.metadata_urls(pack_id))
            except httpx.HTTPError as exc:
                log.info(f'skipping {pack_id}; no endpoint had it: {exc!r}')
                result.skipped.append(pack_id)
                continue
            out_file: Path = self.out_dir / f'{pack_id}.json'
            out_file.write_bytes(payload)
            result.saved.append(pack_id)
        log.info(f'saved metadata for {len(result.saved)} pack(s); skipped {len(result.skipped)}')
        return result


def validate_pack_id(pack_id: int) -> None:
    if not 0 <= pack_id <= MAX_PACK_ID:
        raise ConfigurationError(f'invalid pack id; {pack_id} must be in 0..{MAX_PACK_ID}')


def validate_range(start: int, end: int) -> None:
    if start < 0:
        raise ConfigurationError(f'invalid range; start ({start}) must be >= 0')
    if start >= end:
        raise ConfigurationError(f'invalid range; start ({start}) must be less than end ({end})')
    if end > MAX_PACK_ID:
        raise ConfigurationError(f'invalid range; end ({end}) must be <= {MAX_PACK_ID}')


class PackRipper:
    """
    Downloads every image of a single pack; all-or-nothing.
    - Metadata comes from the primary endpoint only; failure there is fatal.
    - The size variant is resolved before the output directory is created or any image requested.
    - Images are written as `<NN>_<name>.png` (1-based, zero-padded to 2 digits) in `<id> - <mark>/`.
    - Any image failure aborts the remaining downloads.
    """

    def __init__(self, api: PackApiClient, urls: UrlBuilder, out_dir: Path) -> None:
        self.api = api
        self.urls = urls
        self.out_dir = out_dir

    def rip(self, pack_id: int) -> list[Path]:
        validate_pack_id(pack_id)
        metadata_url: str = self.urls.primary_metadata_url(pack_id)
        log.debug(f'fetching metadata, ``{metadata_url}``')
        pack: Pack = decode_pack(self.api.get_with_retry(metadata_url).content)
        size: str = resolve_size_variant(pack)

        pack_dir: Path = self.out_dir / pack_dir_name(pack)
        pack_dir.mkdir(parents=True, exist_ok=True)
        log.info(f'ripping {len(pack.images)} image(s) of pack {pack.id} at {size} into ``{pack_dir}``')

        written: list[Path] = []
        buffer = bytearray()
        total_bytes: int = 0
        for index, image in enumerate(pack.images, start=1):
            url: str = self.urls.image_url(image, size)
            byte_count: int = self.api.download_into(url, buffer)
            out_file: Path = pack_dir / image_file_name(index, image)
            out_file.write_bytes(buffer)
            log.debug(f'wrote ``{out_file.name}`` ({humanize.naturalsize(byte_count)})')
            total_bytes += byte_count
            written.append(out_file)
        log.info(f'done with pack {pack.id}; {len(written)} file(s), {humanize.naturalsize(total_bytes)}')
        return written


def pack_dir_name(pack: Pack) -> str:
    return _safe_path_part(f'{pack.id} - {pack.mark}')


def image_file_name(index: int, image: Image) -> str:
    return _safe_path_part(f'{index:02d}_{image.name}.png')


def _safe_path_part(name: str) -> str:
    """
    Keeps a service-supplied label from escaping its directory.
    """
    return name.replace('/', '_').replace('\\', '_').replace('\x00', '_')


@dataclass
class BatchResult:
    saved: list[int] = field(default_factory=list)
    skipped: list[Path] = field(default_factory=list)


class FirstImageBatchFetcher:
    """
    Downloads the first image of every pack whose metadata sits in `in_dir`.
    - Reads regular files only, non-recursively, in name order.
    - Failures are per-file: bad metadata, no images, unknown sizes, fetch and write errors are logged and skipped.
    - No mirror fallback; the metadata is already local.
    - Writes `<out_dir>/<id>.png`.
    """

    def __init__(self, api: PackApiClient, urls: UrlBuilder, out_dir: Path) -> None:
        self.api = api
        self.urls = urls
        self.out_dir = out_dir

    def list_inputs(self, in_dir: Path) -> list[Path]:
        return sorted(p for p in in_dir.iterdir() if p.is_file())

    def run(self, in_dir: Path) -> BatchResult:
        inputs: list[Path] = self.list_inputs(in_dir)
        self.out_dir.mkdir(parents=True, exist_ok=True)
        result = BatchResult()
        buffer = bytearray()
        for input_path in tqdm(inputs, total=len(inputs), desc='Grabbing first images'):
            try:
                pack_id: int = self.process_file(input_path, buffer)
            except (PackToolError, httpx.HTTPError, OSError) as exc:
                log.warning(f'skipping ``{input_path.name}``: {exc}')
                result.skipped.append(input_path)
                continue
            result.saved.append(pack_id)
        log.info(f'saved {len(result.saved)} first image(s); skipped {len(result.skipped)} file(s)')
        return result

    def process_file(self, input_path: Path, buffer: bytearray) -> int:
        """
        Decodes one metadata file and saves its pack's first image; returns the pack id.
        Called by: run()
        """
        pack: Pack = decode_pack(input_path.read_bytes())
        if not pack.images:
            raise MissingImageError(pack.id)
        first: Image = pack.images[0]
        size: str = resolve_size_variant(pack)
        log.debug(f'grabbing first image for {pack.id}')
        self.api.download_into(self.urls.image_url(first, size), buffer)
        out_file: Path = self.out_dir / f'{pack.id}.png'
        out_file.write_bytes(buffer)
        return pack.id


## entrypoints ------------------------------------------------------
def bruteforce(start: int, end: int, settings: ClientSettings, out_dir: Path) -> EnumerationResult:
    validate_range(start, end)
    with build_client(settings) as client:
        enumerator = PackEnumerator(PackApiClient(client), UrlBuilder(), out_dir)
        return enumerator.run(start, end)


def rip(pack_id: int, settings: ClientSettings, out_dir: Path) -> list[Path]:
    validate_pack_id(pack_id)
    with build_client(settings) as client:
        ripper = PackRipper(PackApiClient(client), UrlBuilder(), out_dir)
        return ripper.rip(pack_id)


def mass_rip_first(in_dir: Path, settings: ClientSettings, out_dir: Path) -> BatchResult:
    with build_client(settings) as client:
        fetcher = FirstImageBatchFetcher(PackApiClient(client), UrlBuilder(), out_dir)
        return fetcher.run(in_dir)


class CLI:
    """
    Manages command-line parsing for the script entrypoint.
    - One subcommand per mode: `bf` (alias `bruteforce`), `rip`, `mass-rip-first`.
    - Every subcommand takes optional `--proxy` and `--out-dir`.
    - Exposes a parse helper to support testing with custom argv.
    """

    @staticmethod
    def build_parser() -> argparse.ArgumentParser:
        parser = argparse.ArgumentParser(description='Download emoji-pack metadata and images.')
        subparsers = parser.add_subparsers(dest='command', required=True)

        bf = subparsers.add_parser(
            'bf', aliases=['bruteforce'], help='download metadata of all available packs in the given range'
        )
        bf.add_argument('-s', '--start', type=int, required=True, help='First pack id (inclusive)')
        bf.add_argument('-e', '--end', type=int, required=True, help='Last pack id (inclusive)')

        mrf = subparsers.add_parser(
            'mass-rip-first', help='download the first image of every pack; metadata read from input dir'
        )
        mrf.add_argument('-i', '--in-dir', required=True, help='Directory of metadata json files (eg from `bf`)')

        rp = subparsers.add_parser('rip', help='download every image of one pack')
        rp.add_argument('-i', '--id', type=int, required=True, help='Pack id')

        for sub in (bf, mrf, rp):
            sub.add_argument(
                '-p',
                '--proxy',
                default=os.getenv(PROXY_ENV_VAR) or None,
                help=f'Optional. Proxy url like http://127.0.0.1:8080 (default: ${PROXY_ENV_VAR})',
            )
            sub.add_argument('-o', '--out-dir', default='.', help='Optional. Output directory (default: current dir)')
        return parser

    @staticmethod
    def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
        return CLI.build_parser().parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    """
    Parses args and runs the chosen mode.
    Returns 0 on success, 1 when the mode fails as a whole (config error, fatal rip error, etc).

    Called by: dundermain
    """
    args: argparse.Namespace = CLI.parse_args(argv)
    settings = ClientSettings(proxy=args.proxy)
    out_dir: Path = Path(args.out_dir).expanduser()
    try:
        if args.command in ('bf', 'bruteforce'):
            bruteforce(args.start, args.end, settings, out_dir)
        elif args.command == 'mass-rip-first':
            mass_rip_first(Path(args.in_dir).expanduser(), settings, out_dir)
        else:
            rip(args.id, settings, out_dir)
    except (PackToolError, httpx.HTTPError, OSError) as exc:
        log.error(f'{args.command} failed: {exc}')
        return 1
    return 0


if __name__ == '__main__':
    sys.exit(main())
