"""
Pytest configuration and fixtures for Express Audit Backend tests.
"""

import os
import tempfile
import shutil

import httpx
import pytest
from fastapi.testclient import TestClient

# Set test environment variables before importing the app
os.environ["STATE_BACKEND"] = "memory"
os.environ["REPORT_BACKEND"] = "local"
os.environ["REPORT_ROOT"] = tempfile.mkdtemp(prefix="express_audit_reports_")
os.environ["LOG_LEVEL"] = "info"

from express_audit_backend.configuration import make_settings
from express_audit_backend.main import app, build_orchestrator, get_orchestrator
from express_audit_backend.repository_client import DOWNLOAD_REL

PSD_FORMAT = "image/vnd.adobe.photoshop"
REPOSITORY_ID = "author-p1-e2.adobeaemcloud.com"
ASSET_PATH = "/content/dam/brand/hero.psd"
PRESIGNED_URL = "https://presigned.example.com/hero.psd?sig=abc"


class FakeAdobeServices:
    """
    Stand-in for IMS, AEM and the manifest service behind an httpx.MockTransport.

    ``status_overrides`` maps a route name (token, descriptor, download,
    manifest, comment, metadata_patch, asset_metadata) to a status code to
    return instead of the happy-path response.
    """

    def __init__(self):
        self.requests = []
        self.status_overrides = {}
        self.manifest_submissions = 0
        self.token_requests = 0

    def route(self, request):
        url = request.url
        if url.path == "/ims/token/v3":
            return "token"
        if url.path.endswith("/documentManifest"):
            return "manifest"
        if url.host == "download.example.com":
            return "download"
        if "/comments/" in url.path:
            return "comment"
        if request.method == "PATCH":
            return "metadata_patch"
        if url.path == "/adobe/repository":
            return "descriptor"
        if url.path.endswith(".3.json"):
            return "asset_metadata"
        return "unknown"

    def handler(self, request):
        self.requests.append(request)
        route = self.route(request)
        if route in self.status_overrides:
            return httpx.Response(self.status_overrides[route], json={"error": route})

        if route == "token":
            self.token_requests += 1
            return httpx.Response(200, json={"access_token": "token-123", "token_type": "bearer", "expires_in": 86399})
        if route == "manifest":
            self.manifest_submissions += 1
            href = f"https://image.adobe.io/pie/psdService/status/job-{self.manifest_submissions}"
            return httpx.Response(202, json={"_links": {"self": {"href": href}}})
        if route == "descriptor":
            return httpx.Response(200, json={"_links": {DOWNLOAD_REL: {"href": "https://download.example.com/hero"}}})
        if route == "download":
            return httpx.Response(200, json={"href": PRESIGNED_URL})
        if route == "comment":
            return httpx.Response(201, json={"created": True})
        if route == "metadata_patch":
            return httpx.Response(200, json={})
        if route == "asset_metadata":
            return httpx.Response(
                200,
                json={"jcr:uuid": "uuid-1", "jcr:content": {"metadata": {"dam:size": 2048, "dc:title": "hero"}}},
            )
        return httpx.Response(404)

    def requests_for(self, route):
        return [request for request in self.requests if self.route(request) == route]


class RecordingSleep:
    def __init__(self):
        self.calls = []

    async def __call__(self, seconds):
        self.calls.append(seconds)


@pytest.fixture
def fake_services():
    return FakeAdobeServices()


@pytest.fixture
def fake_sleep():
    return RecordingSleep()


@pytest.fixture
def http_client(fake_services):
    return httpx.AsyncClient(transport=httpx.MockTransport(fake_services.handler))


@pytest.fixture
def report_root():
    root = tempfile.mkdtemp(prefix="express_audit_test_reports_")
    yield root
    shutil.rmtree(root, ignore_errors=True)


@pytest.fixture
def orchestrator(http_client, fake_sleep, report_root):
    settings = make_settings(
        {
            "state": {"backend": "memory"},
            "reports": {"backend": "local", "local_root": report_root},
            "audit": {"generate_report_log": True},
        }
    )
    return build_orchestrator(settings, http_client=http_client, sleep=fake_sleep)


@pytest.fixture
def client(orchestrator):
    """Create a test client for the FastAPI app bound to the fake services."""
    app.dependency_overrides[get_orchestrator] = lambda: orchestrator
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def asset_event():
    def _build(asset_format=PSD_FORMAT, size=1000, path=ASSET_PATH):
        return {
            "type": "aem.assets.asset.processing_completed",
            "data": {
                "repositoryMetadata": {
                    "dc:format": asset_format,
                    "repo:size": size,
                    "repo:path": path,
                    "repo:repositoryId": REPOSITORY_ID,
                    "repo:assetId": "urn:aaid:aem:1234",
                    "repo:name": "hero.psd",
                }
            },
        }

    return _build


@pytest.fixture
def manifest_body():
    def _build(width=4000, height=3000, image_mode="rgb", layers=None):
        if layers is None:
            layers = [
                {"id": 5, "index": 1, "type": "layer", "name": "woman"},
                {"id": 1, "index": 0, "type": "backgroundLayer", "name": "Background"},
            ]
        return {
            "outputs": [
                {
                    "status": "succeeded",
                    "layers": layers,
                    "document": {
                        "name": "psd",
                        "width": width,
                        "height": height,
                        "bitDepth": 8,
                        "imageMode": image_mode,
                        "iccProfileName": "sRGB IEC61966-2.1",
                    },
                }
            ]
        }

    return _build


@pytest.fixture
def manifest_event(manifest_body):
    def _build(job_id, status="succeeded", reason=None, **manifest_kwargs):
        body = manifest_body(**manifest_kwargs)
        body["jobId"] = job_id
        body["outputs"][0]["status"] = status
        if status == "failed":
            body["outputs"][0].pop("layers")
            body["outputs"][0].pop("document")
            body["outputs"][0]["errors"] = {"type": "InputValidationError", "title": reason or "request failed"}
        return {"event_id": f"evt-{job_id}", "event": {"body": body}}

    return _build
