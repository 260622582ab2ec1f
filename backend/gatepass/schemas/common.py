from datetime import datetime
from typing import Annotated, Optional

from pydantic import AfterValidator, BaseModel

from gatepass.core.clock import as_utc

# SQLite hands back naive datetimes; everything is stored in UTC
UtcDateTime = Annotated[datetime, AfterValidator(as_utc)]


class RejectionResponse(BaseModel):
    error: str
    code: str
    kind: str
    status: Optional[str] = None
