from fastapi import Request

from promptforge.testsets.service import TestSetService


def get_service(request: Request) -> TestSetService:
    """The TestSetService built in the app lifespan."""
    return request.app.state.service
