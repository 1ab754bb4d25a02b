"""
app.schemas
~~~~~~~~~~~
Pydantic schemas and models for the API.
"""
from app.schemas.api_response import ApiResponse
from app.schemas.presence import PresenceData, RealtimeStatsData
from app.schemas.realtime_events import AckResult, InboundFrame

# Call model_rebuild to resolve forward references in generic Pydantic models.
ApiResponse.model_rebuild()
