from __future__ import annotations
import logging
import re
from dataclasses import dataclass
from typing import List, Optional, Tuple
from urllib.parse import parse_qs, urljoin, urlparse

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .errors import UnresolvableLink
from .settings import RemoteSettings

logger = logging.getLogger(__name__)

_OG_IMAGE_RE = re.compile(
    r"<meta[^>]+property=[\"']og:image[\"'][^>]+content=[\"']([^\"']+)[\"']"
    r"|<meta[^>]+content=[\"']([^\"']+)[\"'][^>]+property=[\"']og:image[\"']",
    re.I,
)
_SCREENSHOT_IMG_RE = re.compile(r"<img[^>]+class=[\"'][^\"']*screenshot-image[^\"']*[\"'][^>]+src=[\"']([^\"']+)[\"']", re.I)
_GSHEET_RE = re.compile(r"/spreadsheets/d/([A-Za-z0-9_-]+)")
_GDRIVE_FILE_RE = re.compile(r"/file/d/([A-Za-z0-9_-]+)")


@dataclass(frozen=True)
class Fetched:
    data: bytes
    content_type: str
    url: str
    disposition: str = ""


def _with_param(url: str, param: str) -> str:
    sep = "&" if "?" in url else "?"
    return f"{url}{sep}{param}"


def _host(url: str) -> str:
    try:
        return (urlparse(url).hostname or "").lower()
    except ValueError:
        return ""


def is_onedrive(url: str) -> bool:
    h = _host(url)
    return "onedrive.live.com" in h or "sharepoint.com" in h or h == "1drv.ms"


def is_lightshot(url: str) -> bool:
    h = _host(url)
    return h in ("prnt.sc", "www.prnt.sc", "prntscr.com", "www.prntscr.com")


def direct_download_url(url: str) -> str:
    """
    Rewrites a cloud share link into something that returns the file itself.
    Unknown hosts come back unchanged.
    """
    host = _host(url)
    if not host:
        return url

    if "docs.google.com" in host:
        m = _GSHEET_RE.search(url)
        if m:
            return f"https://docs.google.com/spreadsheets/d/{m.group(1)}/export?format=xlsx"
        return url

    if "drive.google.com" in host:
        m = _GDRIVE_FILE_RE.search(url)
        if m:
            return f"https://drive.google.com/uc?export=download&id={m.group(1)}"
        q = parse_qs(urlparse(url).query)
        if "id" in q:
            return f"https://drive.google.com/uc?export=download&id={q['id'][0]}"
        return url

    if "dropbox.com" in host:
        if "dl=1" in url or "raw=1" in url:
            return url
        if "dl=0" in url:
            return url.replace("dl=0", "dl=1")
        return _with_param(url, "dl=1")

    if is_onedrive(url) and host != "1drv.ms":
        if "/embed" in url:
            return url.replace("/embed", "/download")
        if "/view.aspx" in url:
            return url.replace("/view.aspx", "/download")
        if "/redir" in url:
            return url.replace("/redir", "/download")
        if "Doc.aspx" in url:
            if "action=" in url:
                return re.sub(r"action=[^&]+", "action=download", url)
            return _with_param(url, "action=download")
        if "download=1" not in url and "action=download" not in url:
            return _with_param(url, "download=1")

    return url


def _onedrive_candidates(url: str) -> List[str]:
    # older personal links only download through one of these spellings
    out: List[str] = []
    try:
        u = urlparse(url)
    except ValueError:
        return out
    q = parse_qs(u.query)
    parts = [p for p in u.path.split("/") if p]
    cid = authkey = None
    resid = q.get("resid", [None])[0]
    lowered = [p.lower() for p in parts]
    if "personal" in lowered:
        i = lowered.index("personal")
        if len(parts) > i + 2:
            cid, authkey = parts[i + 1], parts[i + 2]
    authkey = authkey or q.get("authkey", [None])[0]
    if not cid and resid:
        cid = resid.split("!")[0]
    if resid and authkey and cid:
        base = f"cid={cid}&resid={resid}&authkey={authkey}"
        out.append(f"https://onedrive.live.com/download?{base}")
        out.append(f"https://onedrive.live.com/export?{base}&format=xlsx")
        out.append(f"https://onedrive.live.com/embed?{base}&em=2")
    return out


def _looks_like_html(data: bytes) -> bool:
    head = data[:200].lstrip().lower()
    return head.startswith(b"<!doctype html") or head.startswith(b"<html") or head.startswith(b"<!--") \
        or b"<html" in head[:100]


def make_session(settings: RemoteSettings) -> requests.Session:
    # retries cover connection and read failures only; HTTP statuses are answers, not network errors
    retry = Retry(
        total=settings.retries,
        connect=settings.retries,
        read=settings.retries,
        status=0,
        redirect=settings.max_redirects,
        allowed_methods=frozenset(["GET", "HEAD"]),
        backoff_factor=0.3,
        raise_on_status=False,
    )
    session = requests.Session()
    adapter = HTTPAdapter(max_retries=retry)
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    session.max_redirects = settings.max_redirects
    session.headers["User-Agent"] = settings.user_agent
    return session


class ShareLinkResolver:
    """Turns a share link into bytes, or raises UnresolvableLink."""

    def __init__(self, settings: Optional[RemoteSettings] = None, session: Optional[requests.Session] = None):
        self.settings = settings or RemoteSettings()
        self.session = session or make_session(self.settings)

    @property
    def timeout(self) -> Tuple[float, float]:
        return (self.settings.connect_timeout, self.settings.read_timeout)

    def _get(self, url: str, allow_redirects: bool = True) -> requests.Response:
        try:
            return self.session.get(url, timeout=self.timeout, allow_redirects=allow_redirects)
        except requests.TooManyRedirects as e:
            raise UnresolvableLink(f"too many redirects for {url}") from e
        except requests.RequestException as e:
            raise UnresolvableLink(f"network/connection error for {url}: {e}") from e

    def _expand_short_link(self, url: str) -> str:
        resp = self._get(url, allow_redirects=False)
        location = resp.headers.get("Location") or resp.headers.get("location")
        if 300 <= resp.status_code < 400 and location:
            return urljoin(url, location)
        return url

    def _check_status(self, resp: requests.Response, url: str) -> None:
        if resp.status_code in (401, 403):
            raise UnresolvableLink(f"Access denied ({resp.status_code}). The link might be private or require a login: {url}")
        if resp.status_code == 404:
            raise UnresolvableLink(f"File not found (404): {url}")
        if resp.status_code >= 400:
            raise UnresolvableLink(f"HTTP {resp.status_code} for {url}")

    def _download(self, url: str) -> Fetched:
        resp = self._get(url)
        self._check_status(resp, url)
        data = resp.content or b""
        if not data:
            raise UnresolvableLink(f"empty response from {url}")
        if _looks_like_html(data):
            raise UnresolvableLink(f"{url} returned a web page instead of a file; it may require sign-in")
        return Fetched(
            data=data,
            content_type=resp.headers.get("Content-Type", ""),
            url=resp.url or url,
            disposition=resp.headers.get("Content-Disposition", ""),
        )

    def _lightshot_image_url(self, url: str) -> str:
        resp = self._get(url)
        self._check_status(resp, url)
        html = resp.text or ""
        m = _SCREENSHOT_IMG_RE.search(html)
        img = m.group(1) if m else None
        if not img:
            m = _OG_IMAGE_RE.search(html)
            img = (m.group(1) or m.group(2)) if m else None
        if not img or "st.prntscr.com" in img and "splash" in img:
            raise UnresolvableLink(f"no screenshot found behind {url}")
        if img.startswith("//"):
            img = "https:" + img
        return urljoin(url, img)

    def fetch(self, url: str) -> Fetched:
        url = url.strip()
        if is_lightshot(url):
            image_url = self._lightshot_image_url(url)
            logger.info("Lightshot link %s -> %s", url, image_url)
            return self._download(image_url)

        current = url
        if _host(url) == "1drv.ms":
            current = self._expand_short_link(url)
        current = direct_download_url(current)

        candidates = [current]
        if is_onedrive(current):
            candidates += [c for c in _onedrive_candidates(current) if c != current]

        last_err: Optional[UnresolvableLink] = None
        for cand in candidates:
            try:
                fetched = self._download(cand)
            except UnresolvableLink as e:
                logger.debug("Candidate %s failed: %s", cand, e)
                last_err = e
                continue
            logger.info("Resolved %s via %s (%d bytes)", url, cand, len(fetched.data))
            return fetched

        raise last_err or UnresolvableLink(f"all download attempts failed for {url}")

    def resolve_share_link(self, url: str) -> bytes:
        return self.fetch(url).data
