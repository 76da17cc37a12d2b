from pydantic import BaseModel


class HealthResponse(BaseModel):
    status: str
    dependencies: dict[str, str]


class ForwardRequest(BaseModel):
    extracted_text: str
    original_url: str


class ForwardResponse(BaseModel):
    forwarded: bool
    status_code: int
