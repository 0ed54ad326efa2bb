"""Request-scoped access to the composition root."""

from fastapi import Request

from kbsync.container import Container


def get_container(request: Request) -> Container:
    return request.app.state.container
