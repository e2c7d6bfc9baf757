"""Helpers shared by the HTTP routers."""
from fastapi import Request


async def json_body(request: Request) -> dict:
    """Request body as a dict. Anything that is not a JSON object reads as empty."""
    try:
        body = await request.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}
