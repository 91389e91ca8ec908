import json
import re
from typing import Any, Dict, List, Tuple

import httpx
import pytest
from httpx import ASGITransport, AsyncClient

from video_pipeline.config import resolve_config
from video_pipeline.realtime.base import Broadcaster
from video_pipeline.services import PipelineServices

JWT_SECRET = "test-secret"


class FakeProvider:
    """In-memory stand-in for the provider API, served through httpx.MockTransport.

    ``transcode[asset_id]`` is a script of transcode statuses: each metadata
    GET returns the head of the list and advances while more than one entry
    is left.
    """

    def __init__(self, token: str = "test-token"):
        self.valid_tokens = {token}
        self.next_id = 1000
        self.assets: Dict[str, Dict[str, Any]] = {}
        self.uploads: Dict[str, bytes] = {}
        self.transcode: Dict[str, List[str]] = {}
        self.polls: Dict[str, int] = {}
        self.requests: List[httpx.Request] = []
        self.fail_status: Dict[Tuple[str, str], int] = {}
        self.upload_status = 204
        self.refresh_token_accepted = True

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def client(self) -> httpx.Client:
        return httpx.Client(transport=self.transport)

    def add_asset(self, asset_id: str, script=("complete",)) -> None:
        self.assets[asset_id] = {"name": f"asset {asset_id}"}
        self.transcode[asset_id] = list(script)

    def _authorized(self, request: httpx.Request) -> bool:
        header = request.headers.get("authorization", "")
        return header.startswith("Bearer ") and header[7:] in self.valid_tokens

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        method, path = request.method, request.url.path

        forced = self.fail_status.get((method, path))
        if forced:
            return httpx.Response(forced, json={"error": "forced failure"})

        if path == "/oauth/access_token" and method == "POST":
            form = dict(httpx.QueryParams(request.content.decode()))
            if form.get("grant_type") == "refresh_token" and not self.refresh_token_accepted:
                return httpx.Response(400, json={"error": "invalid_grant"})
            token = f"token-{len(self.valid_tokens)}"
            self.valid_tokens.add(token)
            return httpx.Response(
                200, json={"access_token": token, "expires_in": 3600, "refresh_token": "r2"}
            )

        if request.url.host == "upload.test" and method == "PATCH":
            asset_id = path.strip("/")
            body = request.content
            self.uploads[asset_id] = body
            if self.upload_status != 204:
                return httpx.Response(self.upload_status)
            return httpx.Response(204, headers={"Upload-Offset": str(len(body))})

        if not self._authorized(request):
            return httpx.Response(401, json={"error": "Unauthorized", "error_code": 8003})

        if path == "/me" and method == "GET":
            return httpx.Response(200, json={"uri": "/users/1", "name": "Test"})

        if path == "/me/videos" and method == "POST":
            self.next_id += 1
            asset_id = str(self.next_id)
            body = json.loads(request.content)
            self.assets[asset_id] = {"name": body["name"], "create": body}
            self.transcode.setdefault(asset_id, ["in_progress"])
            return httpx.Response(
                201,
                json={
                    "uri": f"/videos/{asset_id}",
                    "upload": {"approach": "tus", "upload_link": f"https://upload.test/{asset_id}"},
                },
            )

        match = re.fullmatch(r"/videos/(\d+)", path)
        if match and match.group(1) in self.assets:
            asset_id = match.group(1)
            if method == "DELETE":
                del self.assets[asset_id]
                return httpx.Response(204)
            script = self.transcode[asset_id]
            status = script[0]
            if len(script) > 1:
                script.pop(0)
            self.polls[asset_id] = self.polls.get(asset_id, 0) + 1
            return httpx.Response(
                200,
                json={
                    "uri": f"/videos/{asset_id}",
                    "name": self.assets[asset_id]["name"],
                    "link": f"https://vimeo.com/{asset_id}",
                    "player_embed_url": f"https://player.vimeo.com/video/{asset_id}",
                    "duration": 42,
                    "upload": {"status": "complete"},
                    "transcode": {"status": status},
                    "play": {"status": "available" if status == "complete" else "unavailable"},
                    "privacy": {"view": "disable"},
                },
            )

        return httpx.Response(404, json={"error": "not found"})


class RecordingBroadcaster(Broadcaster):
    """Collects every event instead of delivering it."""

    def __init__(self):
        self.events: List[Tuple[str, Dict[str, Any]]] = []
        self.direct: List[Tuple[str, str, Dict[str, Any]]] = []

    def send_to_user(self, user_id, event, payload):
        self.direct.append((user_id, event, payload))
        return False

    def broadcast(self, event, payload):
        self.events.append((event, payload))
        return 1

    def for_video(self, video_id):
        return [payload for _, payload in self.events if payload.get("videoId") == video_id]


@pytest.fixture
def config(tmp_path):
    return resolve_config(
        {
            "database": {"url": f"sqlite:///{tmp_path / 'videos.db'}"},
            "queue": {"db_path": str(tmp_path / "queue.db"), "backoff_delay_ms": 0},
            "worker": {"poll_interval_s": 0, "store_write_backoff_s": 0},
            "provider": {
                "access_token": "test-token",
                "refresh_token": "r1",
                "client_id": "client",
                "client_secret": "secret",
                "redirect_uri": "http://test/provider/callback",
            },
            "auth": {"jwt_secret": JWT_SECRET},
        },
        environ={},
    )


@pytest.fixture
def fake_provider():
    return FakeProvider()


@pytest.fixture
def broadcaster():
    return RecordingBroadcaster()


@pytest.fixture
def services(config, fake_provider, broadcaster):
    svc = PipelineServices(config, http=fake_provider.client(), broadcaster=broadcaster)
    svc.store.create_tables()
    yield svc
    svc.close()


@pytest.fixture
def app(config, fake_provider):
    from video_pipeline.api.main import create_app

    svc = PipelineServices(config, http=fake_provider.client())
    yield create_app(config, svc)
    svc.close()


@pytest.fixture(scope="function")
async def client(app):
    # ASGITransport does not run lifespan events
    async with app.router.lifespan_context(app):
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as ac:
            yield ac


def _drain(worker, limit: int = 50) -> int:
    dispatched = 0
    while dispatched < limit and worker.run_once():
        dispatched += 1
    return dispatched


@pytest.fixture
def drain():
    """Run a worker until no job is due; returns the number of dispatches."""
    return _drain
