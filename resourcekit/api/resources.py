from __future__ import annotations

from fastapi import FastAPI

from resourcekit.api.router import Resource
from resourcekit.db.store import ModelStore
from resourcekit.models.owner import Owner
from resourcekit.models.widget import Widget
from resourcekit.services.hooks import RequestContext

SUMMARY_PIPELINE = [
    {"$match": {"is_active": True}},
    {
        "$group": {
            "_id": "$owner_id",
            "widgets": {"$sum": 1},
            "total_price": {"$sum": "$price"},
            "average_price": {"$avg": "$price"},
        }
    },
    {"$sort": {"widgets": -1}},
]


def _summary_query(ctx: RequestContext) -> None:
    ctx.virtual_query = [dict(stage) for stage in SUMMARY_PIPELINE]


def register_resources(app: FastAPI, prefix: str) -> None:
    Resource(app, prefix, "owner", ModelStore(Owner), {"convert_ids": True}).rest()
    Resource(
        app,
        prefix,
        "widget",
        ModelStore(Widget),
        {
            "convert_ids": True,
            "path": "summary",
            "before_virtual": _summary_query,
        },
    ).rest()
