from fastapi import APIRouter, HTTPException

from medchat.core.errors import ConfigurationError, ForwardingError
from medchat.core.forwarding import forward_text
from medchat.models.system import ForwardRequest, ForwardResponse

router = APIRouter(prefix="/api/forward", tags=["forward"])


@router.post("", response_model=ForwardResponse)
async def forward(body: ForwardRequest):
    try:
        status_code = await forward_text(body.extracted_text, body.original_url)
    except ConfigurationError as e:
        raise HTTPException(status_code=503, detail=str(e))
    except ForwardingError as e:
        raise HTTPException(status_code=502, detail=str(e))
    return ForwardResponse(forwarded=True, status_code=status_code)
