import logging

import httpx

from .classifier import PassThrough, classify, is_candidate
from .config import RoutingConfig, load_routing_config
from .forwarder import forward

logger = logging.getLogger("uvicorn.error")


class BodyReadError(Exception):
    def __init__(self, partial: bytes):
        super().__init__("client disconnected before the request body was complete")
        self.partial = partial


async def read_body(receive) -> bytes:
    """Read the full request body from an ASGI receive channel."""
    chunks = []
    while True:
        message = await receive()
        if message["type"] == "http.disconnect":
            raise BodyReadError(b"".join(chunks))
        chunks.append(message.get("body", b""))
        if not message.get("more_body", False):
            return b"".join(chunks)


def replay_receive(body: bytes, receive):
    """
    Fresh receive channel that yields the captured body from the start,
    then defers to the original channel.
    """
    replayed = False

    async def _receive():
        nonlocal replayed
        if not replayed:
            replayed = True
            return {"type": "http.request", "body": body, "more_body": False}
        return await receive()

    return _receive


class PayloadRouterMiddleware:
    """
    Routes webhook POSTs to a destination picked from a JSON body field.

    Anything that is not a match reaches the wrapped app with its body intact.
    """
    def __init__(self,
                 app,
                 config: RoutingConfig | dict,
                 http_client: httpx.AsyncClient | None = None,
                 name: str = "payload-router"):
        if not isinstance(config, RoutingConfig):
            config = load_routing_config(config)
        self.app = app
        self.config = config
        self.http_client = http_client
        self.name = name

    def client_for(self, scope) -> httpx.AsyncClient:
        if self.http_client is not None:
            return self.http_client

        # Under FastAPI the lifespan-managed client lives on app.state
        state = getattr(scope.get("app"), "state", None)
        client = getattr(state, "http_client", None)
        if client is None:
            raise RuntimeError(f"{self.name}: no HTTP client available for forwarding")
        return client

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http" or not is_candidate(scope, self.config):
            await self.app(scope, receive, send)
            return

        try:
            body = captured = await read_body(receive)
        except BodyReadError as exc:
            body, captured = None, exc.partial

        decision = classify(scope, body, self.config)
        if isinstance(decision, PassThrough):
            logger.debug("%s: passing through %s (%s)",
                         self.name, scope["path"], decision.reason.value)
            await self.app(scope, replay_receive(captured, receive), send)
            return

        await forward(scope, receive, send, body, decision,
                      client=self.client_for(scope), name=self.name)
