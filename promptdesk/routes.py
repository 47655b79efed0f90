"""REST routes for mounted resources.

One router per table, mounted at ``/api/<name>``:

========  ======================  ==========================================
Method    Path                    Behaviour
========  ======================  ==========================================
GET       ``/api/<name>``         filtered, sorted, searched, paginated list
GET       ``/api/<name>/{id}``    one row, 404 if absent
POST      ``/api/<name>``         insert object/array, ``?on_conflict=`` upsert
PUT       ``/api/<name>/{id}``    partial update of one row
PUT       ``/api/<name>``         partial update of every filtered row
DELETE    ``/api/<name>/{id}``    delete one row
DELETE    ``/api/<name>``         delete every filtered row
========  ======================  ==========================================

Handlers are plain ``def`` functions so FastAPI runs them in its thread pool;
the psycopg2 driver underneath is blocking. Errors raised by the engine are
rendered by the handlers installed in :mod:`promptdesk.app`.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Body, Depends, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from promptdesk.resource_engine import ResourceEngine

NO_CHANGES = {"status": "no changes"}
DELETED = {"status": "deleted"}


def _split_columns(raw: str | None) -> list[str] | None:
    if not raw:
        return None
    columns = [c.strip() for c in raw.split(",") if c.strip()]
    return columns or None


def create_resource_router(name: str) -> APIRouter:
    """Build the CRUD router for the resource registered as ``name``."""
    router = APIRouter(prefix=f"/api/{name}", tags=[name])

    def get_engine(request: Request) -> ResourceEngine:
        return request.app.state.registry.engine(name)

    @router.get("")
    def list_rows(request: Request, engine: ResourceEngine = Depends(get_engine)) -> Any:
        return jsonable_encoder(engine.list_rows(request.query_params.multi_items()))

    @router.get("/{row_id}")
    def get_row(row_id: str, engine: ResourceEngine = Depends(get_engine)) -> Any:
        return jsonable_encoder(engine.get_one(row_id))

    @router.post("")
    def create_rows(
        payload: Any = Body(...),
        on_conflict: str | None = Query(default=None),
        engine: ResourceEngine = Depends(get_engine),
    ) -> JSONResponse:
        """
        201 with the inserted or upserted row(s). 200 when nothing was written:
        an empty array, or a single-object upsert whose conflict was ignored
        (DO NOTHING), which answers with null.
        """
        created = engine.create(payload, on_conflict=_split_columns(on_conflict))
        status_code = 200 if created is None or payload == [] else 201
        return JSONResponse(status_code=status_code, content=jsonable_encoder(created))

    @router.put("/{row_id}")
    def update_row(row_id: str, patch: Any = Body(...), engine: ResourceEngine = Depends(get_engine)) -> Any:
        updated = engine.update_by_id(row_id, patch)
        if updated is None:
            return NO_CHANGES
        return jsonable_encoder(updated)

    @router.put("")
    def update_rows(request: Request, patch: Any = Body(...), engine: ResourceEngine = Depends(get_engine)) -> Any:
        updated = engine.update_rows(request.query_params.multi_items(), patch)
        if updated is None:
            return NO_CHANGES
        return jsonable_encoder(updated)

    @router.delete("/{row_id}")
    def delete_row(row_id: str, engine: ResourceEngine = Depends(get_engine)) -> Any:
        engine.delete_by_id(row_id)
        return DELETED

    @router.delete("")
    def delete_rows(request: Request, engine: ResourceEngine = Depends(get_engine)) -> Any:
        engine.delete_rows(request.query_params.multi_items())
        return DELETED

    return router
