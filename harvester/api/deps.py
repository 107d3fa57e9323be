from fastapi import Header, Request

from harvester.services.container import Services


def get_services(request: Request) -> Services:
    return request.app.state.services


def get_owner_id(x_user_id: str | None = Header(default=None)) -> str | None:
    return x_user_id or None
