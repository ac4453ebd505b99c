import pytest
import requests

from cadetcore.errors import UnresolvableLink
from cadetcore.remote import ShareLinkResolver, direct_download_url, make_session
from cadetcore.settings import RemoteSettings

PNG = b"\x89PNG\r\n\x1a\n" + b"\x00" * 32
XLSX_MIME = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"


@pytest.mark.parametrize("url,expected", [
    ("https://docs.google.com/spreadsheets/d/abc123/edit#gid=0",
     "https://docs.google.com/spreadsheets/d/abc123/export?format=xlsx"),
    ("https://drive.google.com/file/d/FILE_id-9/view?usp=sharing",
     "https://drive.google.com/uc?export=download&id=FILE_id-9"),
    ("https://drive.google.com/open?id=XYZ",
     "https://drive.google.com/uc?export=download&id=XYZ"),
    ("https://www.dropbox.com/s/x1/roster.xlsx?dl=0",
     "https://www.dropbox.com/s/x1/roster.xlsx?dl=1"),
    ("https://www.dropbox.com/s/x1/roster.xlsx",
     "https://www.dropbox.com/s/x1/roster.xlsx?dl=1"),
    ("https://onedrive.live.com/embed?cid=C1&resid=C1!2&authkey=K",
     "https://onedrive.live.com/download?cid=C1&resid=C1!2&authkey=K"),
    ("https://unit.sharepoint.com/:x:/r/sites/rotc/Doc.aspx?sourcedoc=X&action=default",
     "https://unit.sharepoint.com/:x:/r/sites/rotc/Doc.aspx?sourcedoc=X&action=download"),
    ("https://unit.sharepoint.com/:x:/g/personal/abc",
     "https://unit.sharepoint.com/:x:/g/personal/abc?download=1"),
    ("https://example.org/files/roster.csv",
     "https://example.org/files/roster.csv"),
])
def test_direct_download_url(url, expected):
    assert direct_download_url(url) == expected


def test_session_retries_network_errors_only():
    session = make_session(RemoteSettings(retries=3))
    retry = session.get_adapter("https://example.org").max_retries
    assert retry.connect == 3
    assert retry.read == 3
    assert retry.status == 0
    assert session.headers["User-Agent"] == "Mozilla/5.0"


@pytest.fixture
def resolver(session):
    return ShareLinkResolver(RemoteSettings(), session=session)


def test_fetch_rewrites_then_downloads(resolver, session):
    session.add("https://docs.google.com/spreadsheets/d/abc/export?format=xlsx", b"PK\x03\x04data",
                headers={"Content-Type": XLSX_MIME})
    fetched = resolver.fetch("https://docs.google.com/spreadsheets/d/abc/edit")
    assert fetched.data == b"PK\x03\x04data"
    assert fetched.content_type == XLSX_MIME
    assert resolver.resolve_share_link("https://docs.google.com/spreadsheets/d/abc/edit") == b"PK\x03\x04data"


def test_short_onedrive_link_is_expanded(resolver, session):
    session.add("https://1drv.ms/x/s!AbC", status=301,
                headers={"Location": "https://onedrive.live.com/redir?resid=ABC!1&authkey=K"})
    session.add("https://onedrive.live.com/download?resid=ABC!1&authkey=K", b"a,b\n1,2\n",
                headers={"Content-Type": "text/csv"})
    assert resolver.fetch("https://1drv.ms/x/s!AbC").data == b"a,b\n1,2\n"


def test_onedrive_falls_back_to_alternate_spellings(resolver, session):
    session.add("https://onedrive.live.com/download?cid=C1&resid=C1!2&authkey=K", b"<!DOCTYPE html><html></html>")
    session.add("https://onedrive.live.com/export?cid=C1&resid=C1!2&authkey=K&format=xlsx", b"PK\x03\x04x")
    fetched = resolver.fetch("https://onedrive.live.com/view.aspx?cid=C1&resid=C1!2&authkey=K")
    assert fetched.data == b"PK\x03\x04x"


@pytest.mark.parametrize("status,message", [
    (401, "Access denied"),
    (403, "Access denied"),
    (404, "File not found"),
    (500, "HTTP 500"),
])
def test_http_errors(resolver, session, status, message):
    session.add("https://example.org/roster.csv", b"nope", status=status)
    with pytest.raises(UnresolvableLink, match=message):
        resolver.fetch("https://example.org/roster.csv")


def test_login_page_is_not_a_file(resolver, session):
    session.add("https://example.org/roster.csv", b"  <!DOCTYPE html><html><body>Sign in</body></html>")
    with pytest.raises(UnresolvableLink, match="web page"):
        resolver.fetch("https://example.org/roster.csv")


def test_empty_body(resolver, session):
    session.add("https://example.org/roster.csv", b"")
    with pytest.raises(UnresolvableLink, match="empty"):
        resolver.fetch("https://example.org/roster.csv")


def test_network_error(resolver, session):
    session.routes["https://example.org/roster.csv"] = requests.ConnectionError("refused")
    with pytest.raises(UnresolvableLink, match="network"):
        resolver.fetch("https://example.org/roster.csv")


def test_too_many_redirects(resolver, session):
    session.routes["https://example.org/roster.csv"] = requests.TooManyRedirects("loop")
    with pytest.raises(UnresolvableLink, match="redirects"):
        resolver.fetch("https://example.org/roster.csv")


def test_lightshot_page_yields_the_screenshot(resolver, session):
    page = b'<html><head><meta property="og:image" content="https://image.prntscr.com/image/abc.png"/></head></html>'
    session.add("https://prnt.sc/abc123", page, headers={"Content-Type": "text/html"})
    session.add("https://image.prntscr.com/image/abc.png", PNG, headers={"Content-Type": "image/png"})
    fetched = resolver.fetch("https://prnt.sc/abc123")
    assert fetched.data == PNG
    assert fetched.content_type == "image/png"


def test_lightshot_without_image(resolver, session):
    session.add("https://prnt.sc/gone", b"<html><body>removed</body></html>")
    with pytest.raises(UnresolvableLink, match="no screenshot"):
        resolver.fetch("https://prnt.sc/gone")
