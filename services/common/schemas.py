"""
Common — リクエストモデルの基底クラスとページング補助
"""

import math
from datetime import datetime

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """リクエストボディは camelCase で届く (customerId, inventoryCount)。"""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


def page_envelope(data: list, page: int, limit: int, total: int) -> dict:
    return {
        "data": data,
        "page": page,
        "limit": limit,
        "total": total,
        "totalPages": math.ceil(total / limit) if limit else 0,
    }


def iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None
