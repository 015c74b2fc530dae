"""
Shared fixtures: an in-process digital portal API built on aiohttp.web.
"""

import asyncio
import threading
from typing import Any, Dict, List, Optional

import pytest
from aiohttp import web

from acctsync.sources import AccountSourceInstance


TOKEN = "tok-1"
CLIENT_SECRET = "secret"

TOKEN_REQUESTS = web.AppKey("token_requests", list)
LIST_REQUESTS = web.AppKey("list_requests", list)


def make_portal_app(
    teams: Optional[List[Dict[str, Any]]] = None,
    users: Optional[List[Dict[str, Any]]] = None,
    list_status: int = 200,
    envelope_code: Any = 0,
) -> web.Application:
    """
    Fake portal: a client-credentials token endpoint plus paged org and user
    list endpoints wrapped in ``{"code", "msg", "data": {"records", "total"}}``.
    """
    app = web.Application()
    app[TOKEN_REQUESTS] = []
    app[LIST_REQUESTS] = []

    async def token(request: web.Request) -> web.Response:
        form = await request.post()
        request.app[TOKEN_REQUESTS].append(dict(form))
        if form.get("client_secret") != CLIENT_SECRET:
            return web.json_response({"error": "invalid_client"}, status=401)
        return web.json_response({"access_token": TOKEN, "expires_in": 3600})

    def paged(records: List[Dict[str, Any]]):
        async def handler(request: web.Request) -> web.Response:
            request.app[LIST_REQUESTS].append({
                "path": request.path,
                "query": dict(request.query),
                "authorization": request.headers.get("Authorization"),
            })
            if request.headers.get("Authorization") != f"Bearer {TOKEN}":
                return web.json_response({"error": "unauthorized"}, status=401)
            if list_status != 200:
                return web.json_response({"error": "boom"}, status=list_status)

            page_no = int(request.query.get("pageNo", "1"))
            page_size = int(request.query.get("pageSize", "200"))
            chunk = records[(page_no - 1) * page_size:page_no * page_size]
            return web.json_response({
                "code": envelope_code,
                "msg": "ok" if envelope_code == 0 else "org code unknown",
                "data": {"records": chunk, "total": len(records)},
            })

        return handler

    app.router.add_post("/oauth/token", token)
    app.router.add_get("/api/org/list", paged(teams or []))
    app.router.add_get("/api/user/list", paged(users or []))
    return app


def sample_teams(count: int = 3) -> List[Dict[str, Any]]:
    teams = [{"orgId": "100", "orgName": "Head Office", "parentId": None, "sort": 1}]
    for i in range(1, count):
        teams.append({"orgId": str(100 + i), "orgName": f"Branch {i}", "parentId": "100", "sort": i})
    return teams


def sample_users(count: int = 2) -> List[Dict[str, Any]]:
    return [
        {
            "userId": f"u{i}",
            "loginName": f"user{i}",
            "userName": f"User {i}",
            "mobile": f"1380000000{i}",
            "email": f"user{i}@example.com",
            "orgId": "100",
            "status": "1",
        }
        for i in range(1, count + 1)
    ]


@pytest.fixture
def portal_app_factory():
    return make_portal_app


@pytest.fixture
def make_instance():
    def factory(base_url: str = "http://portal.test", **overrides) -> AccountSourceInstance:
        data = {
            "id": "src-1",
            "name": "Digital Portal",
            "base_url": base_url,
            "client_id": "acct-sync",
            "client_secret": CLIENT_SECRET,
        }
        data.update(overrides)
        return AccountSourceInstance(**data)

    return factory


@pytest.fixture
def portal_server():
    """
    Start fake portals on a background event loop thread.

    For tests that call blocking code (the scan coordinator, the CLI) which
    runs its own event loops in worker threads.
    """
    started = []

    def start(**kwargs):
        app = make_portal_app(**kwargs)
        loop = asyncio.new_event_loop()
        runner = web.AppRunner(app)
        loop.run_until_complete(runner.setup())
        site = web.TCPSite(runner, "127.0.0.1", 0)
        loop.run_until_complete(site.start())
        host, port = runner.addresses[0][:2]

        thread = threading.Thread(target=loop.run_forever, daemon=True)
        thread.start()
        started.append((loop, runner, thread))
        return f"http://{host}:{port}", app

    yield start

    for loop, runner, thread in started:
        loop.call_soon_threadsafe(loop.stop)
        thread.join(timeout=5)
        loop.run_until_complete(runner.cleanup())
        loop.close()


@pytest.fixture
def team_records():
    return sample_teams(3)


@pytest.fixture
def user_records():
    return sample_users(2)


@pytest.fixture
def portal_requests():
    """Read back (token_requests, list_requests) recorded by a fake portal app"""
    def read(app: web.Application):
        return app[TOKEN_REQUESTS], app[LIST_REQUESTS]

    return read
