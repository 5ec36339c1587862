from fastapi import Request

from oauth2_server.oauth2_model import TokenAuthorizationModel


def get_model(request: Request) -> TokenAuthorizationModel:
    """Dependency: the model built in the app lifespan. One per app so issuance locks are shared."""
    return request.app.state.oauth_model
