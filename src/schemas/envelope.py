from pydantic import BaseModel, ConfigDict, Field


class ErrorLocation(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    field: str | None = None
    scene_id: str | None = Field(default=None, alias="sceneId")
    layer_id: str | None = Field(default=None, alias="layerId")


class ErrorInfo(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    code: str
    message: str
    location: ErrorLocation | None = None
    retryable: bool = False
    suggested_fix: str | None = Field(default=None, alias="suggestedFix")
