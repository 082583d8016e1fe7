"""
API Dependencies
"""
from fastapi import Depends, Request

from canteen.context import ServerContext


def get_context(request: Request) -> ServerContext:
    return request.app.state.context


def get_db(ctx: ServerContext = Depends(get_context)):
    """Plain session for read-only endpoints; commits on success"""
    with ctx.database.session() as db:
        yield db
