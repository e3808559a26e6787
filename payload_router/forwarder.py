import asyncio
import logging

import httpx

from .classifier import Forward

logger = logging.getLogger("uvicorn.error")

CREATE_FAILED_MESSAGE = b"Failed to create forward request"
FORWARD_FAILED_MESSAGE = b"Failed to forward request"

# Connection-level headers, recomputed for the new destination
OUTBOUND_SKIPPED_HEADERS = {b"host", b"transfer-encoding"}

# Framing headers, owned by the ASGI server
RELAY_SKIPPED_HEADERS = {b"transfer-encoding", b"connection", b"keep-alive"}


def build_outbound_request(scope: dict, body: bytes, decision: Forward) -> httpx.Request:
    """Outbound request carrying only the caller's headers, no client defaults."""
    headers = [
        (k, v) for k, v in scope["headers"] if k.lower() not in OUTBOUND_SKIPPED_HEADERS
    ]  # repeated names keep their order
    return httpx.Request(
        scope["method"],
        decision.url,
        headers=headers,
        content=body,
    )


def relay_headers(response: httpx.Response) -> list[tuple[bytes, bytes]]:
    # ASGI wants lowercase names, raw keeps the upstream's casing
    return [
        (k.lower(), v) for k, v in response.headers.raw if k.lower() not in RELAY_SKIPPED_HEADERS
    ]


async def send_plain(send, status: int, message: bytes) -> None:
    await send({
        "type": "http.response.start",
        "status": status,
        "headers": [
            (b"content-type", b"text/plain; charset=utf-8"),
            (b"content-length", str(len(message)).encode()),
        ],
    })
    await send({"type": "http.response.body", "body": message, "more_body": False})


async def wait_for_disconnect(receive) -> None:
    while True:
        message = await receive()
        if message["type"] == "http.disconnect":
            return


class Relay:
    """Executes one outbound request and streams the upstream response back."""
    def __init__(self, client: httpx.AsyncClient, request: httpx.Request, send, name: str):
        self.client = client
        self.request = request
        self.send = send
        self.name = name
        self.responded = False

    async def run(self) -> None:
        try:
            response = await self.client.send(self.request, stream=True)
        except httpx.RequestError as exc:
            logger.warning("%s: forwarding to %s failed: %r", self.name, self.request.url, exc)
            self.responded = True
            await send_plain(self.send, 502, FORWARD_FAILED_MESSAGE)
            return

        try:
            self.responded = True
            await self.send({
                "type": "http.response.start",
                "status": response.status_code,
                "headers": relay_headers(response),
            })

            async for chunk in response.aiter_raw():
                await self.send({"type": "http.response.body", "body": chunk, "more_body": True})
            await self.send({"type": "http.response.body", "body": b"", "more_body": False})
        except httpx.HTTPError as exc:
            logger.error("%s: relaying response from %s failed: %r", self.name, self.request.url, exc)
            raise
        finally:
            await response.aclose()


async def forward(scope: dict,
                  receive,
                  send,
                  body: bytes,
                  decision: Forward,
                  client: httpx.AsyncClient,
                  name: str = "payload-router") -> None:
    """
    Forward a classified request and relay the upstream response.

    Once called, the request is committed: failures are answered with
    500 (request construction) or 502 (transport), never delegated.
    A client disconnect cancels the outbound call. Redirects from the
    destination are relayed to the caller, not followed.
    """
    try:
        request = build_outbound_request(scope, body, decision)
    except (httpx.InvalidURL, ValueError) as exc:
        logger.error("%s: cannot build request for %s: %r", name, decision.destination, exc)
        await send_plain(send, 500, CREATE_FAILED_MESSAGE)
        return

    logger.info("%s: forwarding %s %s (key %r) -> %s",
                name, scope["method"], scope["path"], decision.key, request.url)

    relay = Relay(client, request, send, name)
    relay_task = asyncio.ensure_future(relay.run())
    disconnect_task = asyncio.ensure_future(wait_for_disconnect(receive))
    try:
        done, _ = await asyncio.wait(
            {relay_task, disconnect_task},
            return_when=asyncio.FIRST_COMPLETED,
        )
    finally:
        disconnect_task.cancel()
        if not relay_task.done():
            relay_task.cancel()
        await asyncio.gather(relay_task, disconnect_task, return_exceptions=True)

    if relay_task in done:
        relay_task.result()
        return

    logger.info("%s: client disconnected while forwarding to %s", name, request.url)
    if not relay.responded:
        await send_plain(send, 502, FORWARD_FAILED_MESSAGE)
