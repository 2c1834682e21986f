from typing import Any

from fastapi import Request
from pydantic import BaseModel

from orderflow.engine import Engine


def get_engine(request: Request) -> Engine:
    return request.app.state.engine


def dump(model: BaseModel) -> dict[str, Any]:
    return model.model_dump(mode="json")
