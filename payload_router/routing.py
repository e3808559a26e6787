from .config import RouteRule

# Basic prefix matching, first rule wins

def find_upstream(path: str, routes: list[RouteRule]) -> tuple[str | None, str | None]:
    for rule in routes:
        if path.startswith(rule.prefix):
            suffix = path[len(rule.prefix):] or '/'
            return rule.upstream, suffix
    return None, None
