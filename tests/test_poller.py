"""
Tests for the poller service.
"""

import time
from concurrent.futures import TimeoutError as FuturesTimeout
from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient
from google.api_core import exceptions as gapi_exceptions

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

import poller as poller_module
from errors import OrganizerError
from poller import Poller, PubSubPublisher, create_poller_app


def publisher_client(results):
    """Publisher client whose publish() futures resolve (or raise) in order."""
    client = MagicMock()
    futures = []
    for result in results:
        future = MagicMock()
        if isinstance(result, Exception):
            future.result.side_effect = result
        else:
            future.result.return_value = result
        futures.append(future)
    client.publish.side_effect = futures
    return client


class RecordingPublisher:
    def __init__(self, fail_ids=()):
        self.fail_ids = set(fail_ids)
        self.payloads = []

    def publish(self, payload):
        if payload["fileId"] in self.fail_ids:
            raise gapi_exceptions.ServiceUnavailable("unavailable")
        self.payloads.append(payload)
        return "msg-1"


class TestPubSubPublisher:
    """Tests for PubSubPublisher."""

    def test_topic_path(self):
        """Short topic names are expanded with the project."""
        client = MagicMock()
        client.topic_path.return_value = "projects/p/topics/t"
        assert PubSubPublisher("p", "t", publisher=client).topic_path == "projects/p/topics/t"
        assert PubSubPublisher("p", "projects/x/topics/y", publisher=client).topic_path == "projects/x/topics/y"

    def test_publishes_json(self):
        """Payloads are published as UTF-8 JSON."""
        client = publisher_client(["id-1"])
        publisher = PubSubPublisher("p", "projects/p/topics/t", publisher=client)

        assert publisher.publish({"fileId": "f1", "fileName": "a.pdf"}) == "id-1"
        topic, data = client.publish.call_args.args
        assert topic == "projects/p/topics/t"
        assert data == b'{"fileId": "f1", "fileName": "a.pdf"}'

    def test_retries_then_succeeds(self):
        """Failed publishes are retried with growing backoff."""
        sleeps = []
        client = publisher_client([gapi_exceptions.ServiceUnavailable("down"), FuturesTimeout(), "id-3"])
        publisher = PubSubPublisher("p", "projects/p/topics/t", publisher=client, sleep=sleeps.append)

        assert publisher.publish({"fileId": "f1", "fileName": "a.pdf"}) == "id-3"
        assert sleeps == [0.5, 1.0]

    def test_gives_up(self):
        """The last failure is raised."""
        client = publisher_client([gapi_exceptions.ServiceUnavailable("down")] * 3)
        publisher = PubSubPublisher("p", "projects/p/topics/t", publisher=client, sleep=lambda s: None)

        with pytest.raises(gapi_exceptions.ServiceUnavailable):
            publisher.publish({"fileId": "f1", "fileName": "a.pdf"})


class TestPoller:
    """Tests for Poller."""

    def test_publishes_every_page(self, drive, monkeypatch):
        """Every file on every page is published once."""
        monkeypatch.setattr(poller_module, "PAGE_SIZE", 2)
        for n in range(5):
            drive.add_file(f"f{n}", f"Plan {n}.pdf")
        publisher = RecordingPublisher()

        result = Poller(drive, publisher, "src", workers=3).poll()

        assert result.pages == 3
        assert result.published == 5
        assert sorted(p["fileId"] for p in publisher.payloads) == [f"f{n}" for n in range(5)]
        assert publisher.payloads[0].keys() == {"fileId", "fileName"}

    def test_empty_folder(self, drive):
        """An empty folder publishes nothing."""
        result = Poller(drive, RecordingPublisher(), "src").poll()
        assert result.published == 0
        assert result.failed == []

    def test_failed_publish_raises_after_all_pages(self, drive):
        """Publishing continues past failures; the poll then reports them."""
        for n in range(3):
            drive.add_file(f"f{n}", f"Plan {n}.pdf")
        publisher = RecordingPublisher(fail_ids={"f1"})
        poller = Poller(drive, publisher, "src")

        with pytest.raises(OrganizerError):
            poller.poll()
        assert len(publisher.payloads) == 2
        assert poller.last_result.failed == ["f1"]
        assert poller.poll_safely() is None


class TestPollerApp:
    """Tests for the poller HTTP app."""

    def test_health(self, drive):
        """/health answers OK."""
        app = create_poller_app(Poller(drive, RecordingPublisher(), "src"), interval=300, schedule=False)
        with TestClient(app) as client:
            response = client.get("/health")
        assert response.text == "OK"

    def test_poll_now(self, drive):
        """POST /poll runs a poll."""
        drive.add_file("f1", "Plan.pdf")
        publisher = RecordingPublisher()
        app = create_poller_app(Poller(drive, publisher, "src"), interval=300, schedule=False)

        with TestClient(app) as client:
            response = client.post("/poll")

        assert response.status_code == 200
        assert response.text == "Polling completed"
        assert publisher.payloads == [{"fileId": "f1", "fileName": "Plan.pdf"}]

    def test_poll_failure(self, drive):
        """A failed poll answers 500."""
        drive.add_file("f1", "Plan.pdf")
        app = create_poller_app(Poller(drive, RecordingPublisher(fail_ids={"f1"}), "src"), interval=300, schedule=False)

        with TestClient(app) as client:
            response = client.post("/poll")

        assert response.status_code == 500
        assert response.text == "Polling failed"

    def test_scheduler_polls_on_startup(self, drive):
        """With scheduling on, a poll runs as soon as the app starts."""
        drive.add_file("f1", "Plan.pdf")
        poller = Poller(drive, RecordingPublisher(), "src")
        poller.poll_safely = MagicMock(wraps=poller.poll_safely)

        with TestClient(create_poller_app(poller, interval=0.05)):
            for _ in range(100):
                if poller.poll_safely.called:
                    break
                time.sleep(0.01)

        assert poller.poll_safely.called
