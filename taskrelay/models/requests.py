"""Request models validated before any side effect.

Every mutation entry point parses its input through one of these pydantic
models. Parsing failures surface as ``ValidationError`` with the field errors
attached, so malformed input is rejected before the tracker is touched.
"""

from typing import Any, TypeVar

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from taskrelay.enums import DeployMode, WorkerModel
from taskrelay.exceptions import ValidationError

RequestT = TypeVar("RequestT", bound=BaseModel)


class _Request(BaseModel):
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)


class StartDeploymentRequest(_Request):
    task_id: str = Field(..., min_length=1)
    repository_link_id: str = Field(..., min_length=1)
    model: WorkerModel
    mode: DeployMode = DeployMode.PLAN


class ContinueDeploymentRequest(_Request):
    deployment_id: str = Field(..., min_length=1)
    model: WorkerModel
    custom_prompt: str | None = Field(default=None, max_length=4000)


class DeploymentRef(_Request):
    deployment_id: str = Field(..., min_length=1)


class DeployPlanRequest(_Request):
    thread_id: str = Field(..., min_length=1)
    version: int = Field(..., ge=1)
    task_id: str = Field(..., min_length=1)
    repository_link_id: str = Field(..., min_length=1)
    model: WorkerModel


class SessionRequest(_Request):
    task_id: str = Field(..., min_length=1)
    repository_link_id: str = Field(..., min_length=1)


class AddThreadRequest(_Request):
    session_id: str = Field(..., min_length=1)
    model: str = Field(..., min_length=1)
    model_label: str = Field(..., min_length=1)


class SaveRevisionRequest(_Request):
    # Generated content is stored verbatim
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=False)

    thread_id: str = Field(..., min_length=1)
    version: int = Field(..., ge=1)
    content: str = Field(..., min_length=1)
    feedback: str | None = None


def parse_request(request_type: type[RequestT], /, **data: Any) -> RequestT:
    """Validate raw input into a request model.

    Args:
        request_type: Request model class
        **data: Raw field values

    Returns:
        Validated request

    Raises:
        ValidationError: If any field is missing or malformed
    """
    try:
        return request_type(**data)
    except PydanticValidationError as e:
        errors = [{"loc": list(err["loc"]), "msg": err["msg"]} for err in e.errors()]
        raise ValidationError("Invalid payload.", errors=errors) from e
