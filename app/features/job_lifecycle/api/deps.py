from fastapi import Request

from ..container import MarketplaceServices


def get_services(request: Request) -> MarketplaceServices:
    return request.app.state.services
