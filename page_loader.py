#!/usr/bin/env python3
import argparse
import logging
import os
import posixpath
import re
import sys
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Union
from urllib.parse import urldefrag, urljoin, urlparse

import requests
from bs4 import BeautifulSoup, FeatureNotFound, Tag
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

__version__ = "1.0.0"

# -------------------- Config --------------------

DEFAULT_HEADERS = {
    "User-Agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/124.0.0.0 Safari/537.36",
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.7",
}

NON_ALNUM_RE = re.compile(r"[^0-9A-Za-z]")
EXT_LETTERS_RE = re.compile(r"^[A-Za-z]*")

UNFETCHABLE_PREFIXES = ("#", "mailto:", "tel:", "javascript:", "data:", "blob:")


# -------------------- Settings --------------------


@dataclass
class Settings:
    timeout: float = 15.0
    workers: int = 16
    retries: int = 5
    backoff_factor: float = 0.5
    # exact hostname match instead of substring containment
    strict_origin: bool = False
    headers: Dict[str, str] = field(default_factory=lambda: dict(DEFAULT_HEADERS))


# -------------------- Models --------------------


class AssetTag(str, Enum):
    IMAGE = "img"
    SCRIPT = "script"
    STYLESHEET = "link"


TARGET_ATTRIBUTES = {
    AssetTag.IMAGE: "src",
    AssetTag.SCRIPT: "src",
    AssetTag.STYLESHEET: "href",
}

# scan order, kept stable so planned names are deterministic
SCAN_ORDER = (AssetTag.IMAGE, AssetTag.STYLESHEET, AssetTag.SCRIPT)


@dataclass
class Asset:
    tag: AssetTag
    attribute: str
    reference: str
    url: str
    node: Tag = field(repr=False, compare=False)
    local_link: Optional[str] = None
    local_path: Optional[Path] = None


@dataclass(frozen=True)
class DownloadTask:
    url: str
    destination: Path


@dataclass
class DownloadResult:
    task: DownloadTask
    error: Optional[BaseException] = None
    stage: Optional[str] = None  # "fetch" | "write" | "download" when failed
    size: int = 0

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class PageJob:
    url: str
    output_dir: Path
    page_name: str
    assets_dir_name: str

    @property
    def page_path(self) -> Path:
        return self.output_dir / self.page_name

    @property
    def assets_dir(self) -> Path:
        return self.output_dir / self.assets_dir_name


@dataclass
class MirrorReport:
    page_path: Path
    results: List[DownloadResult] = field(default_factory=list)

    @property
    def downloaded(self) -> List[DownloadResult]:
        return [r for r in self.results if r.ok]

    @property
    def failures(self) -> List[DownloadResult]:
        return [r for r in self.results if not r.ok]


# -------------------- Name transform --------------------


def transform_hostname(hostname: str) -> str:
    if hostname.endswith("/"):
        hostname = hostname[:-1]
    return NON_ALNUM_RE.sub("-", hostname)


def path_extension(path_with_query: str) -> str:
    """Lower-cased letter run after the last dot of the path's final segment.

    The query string and fragment are ignored, so ``/app.css?master-557bb553/``
    yields ``css`` and ``/courses?v=1.2`` yields nothing.
    """
    path = re.split(r"[?#]", path_with_query, maxsplit=1)[0]
    if path.endswith("/"):
        path = path[:-1]
    _, ext = posixpath.splitext(posixpath.basename(path))
    return EXT_LETTERS_RE.match(ext[1:]).group(0).lower()


def transform_pathname(path_with_query: str) -> str:
    normalized = path_with_query
    if normalized.endswith("/"):
        normalized = normalized[:-1]
    token = NON_ALNUM_RE.sub("-", normalized)
    ext = path_extension(path_with_query)
    if not ext:
        return f"{token}.html"
    token = re.sub(f"-{re.escape(ext)}$", f".{ext}", token, flags=re.IGNORECASE)
    if token.endswith(f".{ext}"):
        return token
    return f"{token}.{ext}"


def page_stem(url: str) -> str:
    _, sep, rest = url.partition("//")
    return transform_hostname(rest if sep else url)


def local_name_for_url(absolute_url: str) -> str:
    p = urlparse(absolute_url)
    query = f"?{p.query}" if p.query else ""
    return transform_hostname(p.hostname or "") + transform_pathname(f"{p.path}{query}")


# -------------------- HTML utils --------------------


def bs4_parse(html: str) -> BeautifulSoup:
    try:
        return BeautifulSoup(html, "lxml")
    except FeatureNotFound:
        return BeautifulSoup(html, "html.parser")


def serialize_html(soup: BeautifulSoup) -> str:
    return soup.decode(formatter="minimal")


def can_fetch_url(u: Optional[str]) -> bool:
    if not u:
        return False
    u = u.strip()
    if not u or u.startswith(UNFETCHABLE_PREFIXES):
        return False
    return True


def origin_of(url: str) -> str:
    p = urlparse(url)
    return f"{p.scheme}://{p.netloc}/"


# -------------------- Extraction --------------------


def get_target_attribute(tag: Union[AssetTag, str]) -> str:
    try:
        return TARGET_ATTRIBUTES[AssetTag(tag)]
    except ValueError:
        raise ValueError(f"invalid resource tag: {tag!r}") from None


def is_same_origin(
    page_url: str, reference: str, resolved_url: str, strict: bool = False
) -> bool:
    page_host = urlparse(page_url).hostname or ""
    ref_host = urlparse(resolved_url).hostname or ""
    if not ref_host:
        return False
    if strict:
        return ref_host == page_host
    # hostname containment in either direction, not equality
    return ref_host in page_url or (bool(page_host) and page_host in reference)


def extract_assets(
    soup: BeautifulSoup, page_url: str, *, strict_origin: bool = False
) -> List[Asset]:
    origin = origin_of(page_url)
    local_prefix = f"{page_stem(page_url)}_files/"
    assets: List[Asset] = []
    for tag in SCAN_ORDER:
        attribute = get_target_attribute(tag)
        for node in soup.find_all(tag.value):
            reference = node.get(attribute)
            if not can_fetch_url(reference):
                continue
            reference = reference.strip()
            if reference.startswith(local_prefix):
                continue
            try:
                absolute_url = urldefrag(urljoin(origin, reference))[0]
                same = is_same_origin(page_url, reference, absolute_url, strict_origin)
            except ValueError:
                logging.debug("skip malformed %s", reference)
                continue
            if not same:
                logging.debug("skip cross-origin %s", reference)
                continue
            assets.append(Asset(tag, attribute, reference, absolute_url, node))
    return assets


# -------------------- Planning --------------------


def _unique_name(name: str, claimed: Dict[str, str]) -> str:
    if name not in claimed:
        return name
    stem, ext = posixpath.splitext(name)
    n = 1
    while f"{stem}-{n}{ext}" in claimed:
        n += 1
    return f"{stem}-{n}{ext}"


def plan_assets(assets: Iterable[Asset], job: PageJob) -> List[DownloadTask]:
    claimed: Dict[str, str] = {}
    by_url: Dict[str, str] = {}
    tasks: Dict[DownloadTask, None] = {}
    for asset in assets:
        name = by_url.get(asset.url)
        if name is None:
            base = local_name_for_url(asset.url)
            name = _unique_name(base, claimed)
            if name != base:
                logging.warning(
                    "%s collides with %s, saving as %s", asset.url, claimed[base], name
                )
            claimed[name] = asset.url
            by_url[asset.url] = name
        asset.local_link = f"{job.assets_dir_name}/{name}"
        asset.local_path = job.assets_dir / name
        tasks.setdefault(DownloadTask(asset.url, asset.local_path))
    return list(tasks)


# -------------------- Rewriters --------------------


def rewrite_assets(assets: Iterable[Asset]) -> None:
    for asset in assets:
        if asset.local_link is None:
            raise ValueError(f"asset {asset.url} has not been planned")
        asset.node[asset.attribute] = asset.local_link


# -------------------- HTTP --------------------


def build_session(settings: Optional[Settings] = None) -> requests.Session:
    settings = settings or Settings()
    s = requests.Session()
    retry = Retry(
        total=settings.retries,
        backoff_factor=settings.backoff_factor,
        status_forcelist=[429, 500, 502, 503, 504],
        allowed_methods={"GET", "HEAD"},
        raise_on_status=False,
        respect_retry_after_header=True,
    )
    pool = max(10, settings.workers)
    adapter = HTTPAdapter(max_retries=retry, pool_connections=pool, pool_maxsize=pool)
    s.mount("http://", adapter)
    s.mount("https://", adapter)
    s.headers.update(settings.headers)
    return s


def fetch_page(session: requests.Session, url: str, timeout: float) -> str:
    r = session.get(url, timeout=timeout)
    r.raise_for_status()
    ct = (r.headers.get("Content-Type") or "").lower()
    if "charset" not in ct:
        r.encoding = r.apparent_encoding or "utf-8"
    return r.text


# -------------------- Downloaders --------------------


def download_one(
    session: requests.Session, task: DownloadTask, settings: Settings
) -> DownloadResult:
    try:
        resp = session.get(task.url, timeout=settings.timeout)
        resp.raise_for_status()
        data = resp.content
    except requests.RequestException as e:
        logging.warning("error downloading %s: %s", task.url, e)
        return DownloadResult(task, error=e, stage="fetch")
    try:
        task.destination.write_bytes(data)
    except OSError as e:
        logging.warning("failed to write %s: %s", task.destination, e)
        return DownloadResult(task, error=e, stage="write")
    logging.info("downloaded asset: %s -> %s", task.url, task.destination)
    return DownloadResult(task, size=len(data))


def download_all(
    session: requests.Session, tasks: Sequence[DownloadTask], settings: Settings
) -> List[DownloadResult]:
    if not tasks:
        return []
    results: Dict[DownloadTask, DownloadResult] = {}
    with ThreadPoolExecutor(max_workers=max(1, settings.workers)) as pool:
        future_map = {pool.submit(download_one, session, t, settings): t for t in tasks}
        for fut in as_completed(future_map):
            task = future_map[fut]
            try:
                results[task] = fut.result()
            except Exception as e:
                logging.error("unexpected error downloading %s: %s", task.url, e)
                results[task] = DownloadResult(task, error=e, stage="download")
    return [results[t] for t in tasks]


# -------------------- Main: single page --------------------


def build_page_job(url: str, output_dir: Union[str, Path, None] = None) -> PageJob:
    out = Path(output_dir if output_dir is not None else os.getcwd()).resolve()
    stem = page_stem(url)
    return PageJob(
        url=url,
        output_dir=out,
        page_name=f"{stem}.html",
        assets_dir_name=f"{stem}_files",
    )


def write_page(path: Path, html: str) -> None:
    # "x" refuses to replace a page left by an earlier run
    with open(path, "x", encoding="utf-8") as f:
        f.write(html)


def mirror_page(
    url: str,
    output_dir: Union[str, Path, None] = None,
    settings: Optional[Settings] = None,
    session: Optional[requests.Session] = None,
) -> MirrorReport:
    settings = settings or Settings()
    job = build_page_job(url, output_dir)
    job.output_dir.mkdir(exist_ok=True)

    own_session = session is None
    if session is None:
        session = build_session(settings)
    try:
        logging.info("GET %s", url)
        soup = bs4_parse(fetch_page(session, url, settings.timeout))

        assets = extract_assets(soup, url, strict_origin=settings.strict_origin)
        tasks = plan_assets(assets, job)
        rewrite_assets(assets)
        logging.debug("%d assets, %d downloads", len(assets), len(tasks))

        write_page(job.page_path, serialize_html(soup))
        try:
            job.assets_dir.mkdir()
        except OSError:
            job.page_path.unlink()
            raise

        results = download_all(session, tasks, settings)
    finally:
        if own_session:
            session.close()
    return MirrorReport(page_path=job.page_path, results=results)


def download_page(
    url: str,
    output_dir: Union[str, Path, None] = None,
    settings: Optional[Settings] = None,
    session: Optional[requests.Session] = None,
) -> str:
    report = mirror_page(url, output_dir, settings, session)
    if report.failures:
        logging.warning(
            "%d of %d assets failed", len(report.failures), len(report.results)
        )
        for r in report.failures:
            logging.warning("  %s (%s): %s", r.task.url, r.stage, r.error)
    logging.info("saved to: %s", report.page_path)
    return str(report.page_path)


# -------------------- Config loader --------------------


def load_config_file(path: str) -> Dict[str, Union[str, int, float, bool, List[str]]]:
    p = Path(path)
    suf = p.suffix.lower()
    if suf in {".toml", ".tml"}:
        try:
            import tomllib  # py311+
        except ImportError:
            try:
                import tomli as tomllib  # backport
            except ImportError:
                raise RuntimeError("TOML config requires Python 3.11+ or 'tomli'")
        with open(p, "rb") as f:
            return tomllib.load(f) or {}
    elif suf in {".yaml", ".yml"}:
        import yaml

        with open(p, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
            if not isinstance(data, dict):
                raise RuntimeError("Top-level YAML must be a mapping")
            return data
    else:
        raise RuntimeError("Unsupported config format. Use .toml or .yaml")


# -------------------- CLI --------------------


def build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="page-loader",
        description="Download a page and its same-origin assets for offline use.",
    )
    p.add_argument("--config", type=str, help="path to config.toml|.yaml", default=None)
    p.add_argument("url", help="http(s) URL")
    p.add_argument(
        "-o", "--output", default=os.getcwd(), help="output dir (default: cwd)"
    )
    p.add_argument(
        "--timeout", type=float, default=15.0, help="request timeout seconds"
    )
    p.add_argument("--workers", type=int, default=16, help="concurrent downloads")
    p.add_argument("--retries", type=int, default=5, help="transport retries")
    p.add_argument(
        "--strict-origin",
        action="store_true",
        help="require exact hostname match for assets",
    )
    p.add_argument("--verbose", action="store_true", help="debug logging")
    p.add_argument("-V", "--version", action="version", version=f"%(prog)s {__version__}")
    return p


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = build_arg_parser()
    preliminary, _ = parser.parse_known_args(argv)
    if preliminary.config:
        cfg = load_config_file(preliminary.config)
        flat = dict(cfg)
        for g in ("general", "http"):
            group = flat.pop(g, None)
            if isinstance(group, dict):
                flat.update(group)
        parser.set_defaults(**{k.replace("-", "_"): v for k, v in flat.items()})
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> None:
    try:
        args = parse_args(argv)
    except (RuntimeError, OSError, ValueError) as e:
        print(f"error: {e}", file=sys.stderr)
        sys.exit(1)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s: %(message)s",
    )
    if urlparse(args.url).scheme not in {"http", "https"}:
        print("error: invalid URL, use http:// or https://", file=sys.stderr)
        sys.exit(1)

    settings = Settings(
        timeout=args.timeout,
        workers=max(1, args.workers),
        retries=max(0, args.retries),
        strict_origin=args.strict_origin,
    )
    try:
        page_path = download_page(args.url, args.output, settings)
    except (requests.RequestException, OSError) as e:
        print(f"error: {e}", file=sys.stderr)
        sys.exit(1)
    print(f"Page was successfully downloaded into '{page_path}'")


if __name__ == "__main__":
    main()
