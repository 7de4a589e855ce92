"""FastAPI dependencies."""
from fastapi import Request

from tip_reconciliation.bootstrap import Services


def get_services(request: Request) -> Services:
    """Services built by the application lifespan."""
    return request.app.state.services
