"""Pydantic models for the JSON bodies exchanged with REST providers."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field, model_validator


class RestBaseModel(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class ErrorResponse(RestBaseModel):
    """Error body; accepts ``message``, ``error`` or ``detail`` as the text field."""

    message: str = ""
    code: str | int | None = None

    @model_validator(mode="before")
    @classmethod
    def _normalize_message(cls, value: object) -> object:
        if not isinstance(value, dict):
            return {"message": str(value)}
        data: dict[str, object] = {str(key): item for key, item in value.items()}
        if "message" not in data:
            for candidate in ("error", "detail", "title"):
                text = data.get(candidate)
                if isinstance(text, str):
                    data["message"] = text
                    break
        return data


class ObjectResponse(RestBaseModel):
    """Body describing one remote object."""

    attributes: dict[str, object] = Field(default_factory=dict[str, object])

    @model_validator(mode="before")
    @classmethod
    def _collect_attributes(cls, value: object) -> object:
        if not isinstance(value, dict):
            raise ValueError("Expected a JSON object describing the remote resource")
        body = {str(key): item for key, item in value.items()}
        # some APIs wrap the object, e.g. {"data": {...}}
        wrapped = body.get("data")
        if len(body) == 1 and isinstance(wrapped, dict):
            body = {str(key): item for key, item in wrapped.items()}
        return {"attributes": body}
