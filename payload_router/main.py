from contextlib import asynccontextmanager
from os import getenv

import httpx
import uvicorn
from fastapi import FastAPI, Request, Response, HTTPException

from .config import Settings, load_settings
from .middleware import PayloadRouterMiddleware
from .routing import find_upstream

HOP_BY_HOP_HEADERS = {
    b'connection',
    b'keep-alive',
    b'proxy-authenticate',
    b'proxy-authorization',
    b'te',
    b'trailers',
    b'transfer-encoding',
    b'upgrade',
    b'host',
}

settings = load_settings(getenv("PAYLOAD_ROUTER_CONFIG"))


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown logic."""
    #---- Startup ----
    owns_client = not hasattr(app.state, 'http_client')
    if owns_client:
        app.state.http_client = httpx.AsyncClient(timeout=app.state.settings.upstream_timeout)

    try:
        yield
    finally:
        #---- Shutdown ----
        if owns_client:
            await app.state.http_client.aclose()


async def proxy(path: str, request: Request):
    """Default next handler: prefix-routed reverse proxy."""
    upstream, suffix = find_upstream("/" + path, request.app.state.settings.routes)
    if not upstream:
        raise HTTPException(status_code=404, detail="No upstream route found")

    url = upstream.rstrip("/") + suffix
    headers = [
        (k, v) for k, v in request.headers.raw if k.lower() not in HOP_BY_HOP_HEADERS
    ] # headers excluding hop_by_hop headers

    body = await request.body()

    # ---- Proxy Request ----
    try:
        resp = await request.app.state.http_client.request(
            request.method,
            url,
            headers=headers,
            content=body,
            params=request.query_params
        )
    except httpx.RequestError as exc:
        raise HTTPException(status_code=502, detail=str(exc))

    filtered_headers = {
        k: v for k, v in resp.headers.items()
        if k.lower() not in { "content-encoding", "content-length", "transfer-encoding", "connection" }
    }

    return Response(
        content=resp.content,
        status_code=resp.status_code,
        headers=filtered_headers
    )


def create_app(settings: Settings) -> FastAPI:
    app = FastAPI(lifespan=lifespan)
    app.state.settings = settings
    app.add_middleware(PayloadRouterMiddleware, config=settings.payload_router)
    app.add_api_route(
        path="/{path:path}",
        endpoint=proxy,
        methods=["GET", "POST", "PUT", "DELETE", "PATCH", "OPTIONS", "HEAD"],
    )
    return app


application = create_app(settings)


def run() -> None:
    uvicorn.run(application, host=getenv("HOST", "0.0.0.0"), port=int(getenv("PORT", "8080")))
