import io
import threading

import pytest
from openpyxl import Workbook

from cadetcore.detect import Artifact
from cadetcore.models import Person, Subject
from cadetcore.remote import ShareLinkResolver
from cadetcore.service import TrainingProgram
from cadetcore.settings import load_settings

XLSX_MIME = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"


class FakeExtractor:
    """Returns canned text instead of running PDF/Word/OCR extraction."""

    def __init__(self, text=""):
        self.text = text
        self.calls = []
        self.gate = None  # threading.Event; extraction blocks until it is set

    def extract_text(self, data, mime_type):
        self.calls.append(mime_type)
        if self.gate is not None:
            self.gate.wait(5)
        return self.text


class FakeResponse:
    def __init__(self, status_code=200, content=b"", headers=None, url=""):
        self.status_code = status_code
        self.content = content
        self.headers = headers or {}
        self.url = url

    @property
    def text(self):
        return self.content.decode("utf-8", errors="replace")


class FakeSession:
    """URL -> FakeResponse (or exception). Unknown URLs answer 404."""

    def __init__(self):
        self.routes = {}
        self.requested = []

    def add(self, url, content=b"", status=200, headers=None):
        self.routes[url] = FakeResponse(status, content, headers or {}, url)

    def get(self, url, timeout=None, allow_redirects=True):
        self.requested.append(url)
        resp = self.routes.get(url)
        if isinstance(resp, Exception):
            raise resp
        return resp or FakeResponse(404, b"", {}, url)


def csv_artifact(text, filename="upload.csv"):
    return Artifact(text.encode("utf-8"), filename, "text/csv")


def xlsx_bytes(rows, merges=()):
    wb = Workbook()
    ws = wb.active
    ws.title = "Sheet1"
    for row in rows:
        ws.append(list(row))
    for rng in merges:
        ws.merge_cells(rng)
    buf = io.BytesIO()
    wb.save(buf)
    return buf.getvalue()


@pytest.fixture(autouse=True)
def isolated_data_dir(tmp_path, monkeypatch):
    monkeypatch.setenv("CADETCORE_DATA_DIR", str(tmp_path / "data"))
    monkeypatch.delenv("CADETCORE_PROCESSING_TIMEOUT", raising=False)
    monkeypatch.delenv("CADETCORE_MAX_CADETS", raising=False)


@pytest.fixture
def settings():
    return load_settings()


@pytest.fixture
def extractor():
    fake = FakeExtractor()
    yield fake
    if fake.gate is not None:
        fake.gate.set()


@pytest.fixture
def session():
    return FakeSession()


@pytest.fixture
def program(settings, extractor, session):
    prog = TrainingProgram(settings, extractor=extractor, resolver=ShareLinkResolver(settings.remote, session=session))
    yield prog
    prog.close()


def add_cadet(program, first, last, external_id="", email="", **profile):
    person = Person(id="", subject=Subject.CADET, first_name=first, last_name=last,
                    external_id=external_id, email=email, **profile)
    created = program.cadets_registry.create(person)
    program.cache.invalidate()
    return created


@pytest.fixture
def two_cadets(program):
    juan = add_cadet(program, "Juan", "Dela Cruz", "2024-0001", "juan.delacruz@school.edu", company="Alpha")
    ana = add_cadet(program, "Ana", "Reyes", email="ana.reyes@school.edu", company="Bravo")
    return juan, ana


@pytest.fixture
def gate(extractor):
    extractor.gate = threading.Event()
    return extractor.gate
