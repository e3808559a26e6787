class RecordingApp:
    """ASGI app standing in for the next handler; records every request it serves."""
    def __init__(self, status: int = 200, body: bytes = b"handled by next"):
        self.status = status
        self.body = body
        self.calls = []

    async def __call__(self, scope, receive, send):
        body = b""
        while True:
            message = await receive()
            body += message.get("body", b"")
            if not message.get("more_body", False):
                break

        self.calls.append({
            "method": scope["method"],
            "path": scope["path"],
            "query": scope.get("query_string", b""),
            "headers": list(scope["headers"]),
            "body": body,
        })

        await send({
            "type": "http.response.start",
            "status": self.status,
            "headers": [(b"content-type", b"text/plain")],
        })
        await send({"type": "http.response.body", "body": self.body})
