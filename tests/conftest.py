# Centralized pytest configuration file (fixtures, hooks, plugins, etc.)
import pytest
from asgi_lifespan import LifespanManager
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from httpx import AsyncClient, ASGITransport

from payload_router.config import RouteRule, RoutingConfig, Settings
from payload_router.main import create_app
from payload_router.middleware import PayloadRouterMiddleware
from payload_router.testing.recording_app import RecordingApp


@pytest.fixture
def routing_config() -> RoutingConfig:
    return RoutingConfig(
        mappings={
            "KHUID000001": "http://upstream-a/hook",
            "42": "http://upstream-b/numeric",
            "with-query": "http://upstream-a/hook?b=2",
        },
    )


@pytest.fixture
def upstream_app() -> FastAPI:
    app = FastAPI()     # mock upstream for forwarded and proxied requests

    @app.api_route("/{path:path}", methods=["GET", "POST"])
    async def echo(path: str, request: Request):
        body = await request.body()
        response = JSONResponse(
            {
                "host": request.headers.get("host"),
                "path": "/" + path,
                "query": request.url.query,
                "body": body.decode(),
                "x_multi": request.headers.getlist("x-multi"),
                "received_headers": dict(request.headers),
            },
            status_code=int(request.headers.get("x-upstream-status", "200")),
        )
        response.headers.append("x-upstream", "one")
        response.headers.append("x-upstream", "two")
        return response

    return app


@pytest.fixture
async def upstream_client(upstream_app: FastAPI):
    """Outbound client whose transport is the mock upstream app"""
    client = AsyncClient(transport=ASGITransport(app=upstream_app))
    yield client
    await client.aclose()


@pytest.fixture
def next_app() -> RecordingApp:
    return RecordingApp()


@pytest.fixture
async def router_client(routing_config: RoutingConfig,
                        next_app: RecordingApp,
                        upstream_client: AsyncClient):
    """Client talking to the middleware wrapped around a recording next handler"""
    router = PayloadRouterMiddleware(next_app, routing_config, http_client=upstream_client)
    async with AsyncClient(
            transport=ASGITransport(app=router),
            base_url="http://gateway") as client:
        yield client


@pytest.fixture
async def gateway_client(routing_config: RoutingConfig, upstream_client: AsyncClient):
    """Full application client, downstream proxy and forwarding both hit the mock upstream"""
    app = create_app(Settings(
        routes=[
            RouteRule(prefix='/webhooks', upstream='http://downstream'),
            RouteRule(prefix='/hello', upstream='http://upstream'),
        ],
        payload_router=routing_config,
    ))
    # Injected before startup so the lifespan keeps it
    app.state.http_client = upstream_client

    async with LifespanManager(app):
        async with AsyncClient(
                transport=ASGITransport(app=app),
                base_url="http://gateway") as client:
            yield client
