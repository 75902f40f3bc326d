from datetime import datetime
from typing import Any, Dict, List

from sqlalchemy import JSON, DateTime, String, Text, orm

from typing_extensions import Annotated

str255 = Annotated[str, 255]
str1024 = Annotated[str, 1024]
text = Annotated[str, "text"]
timestamptz = Annotated[datetime, "timestamptz"]
jsondict = Annotated[Dict[str, Any], "json"]
jsonlist = Annotated[List[str], "json"]


class Base(orm.DeclarativeBase):
    type_annotation_map = {
        str255: String(255),
        str1024: String(1024),
        text: Text(),
        timestamptz: DateTime(timezone=True),
        jsondict: JSON(),
        jsonlist: JSON(),
    }
