from fastapi import APIRouter, HTTPException, status
from fastapi.concurrency import run_in_threadpool

from avatar_build.models import BuildRequest, BuildResponse
from avatar_build.services.build import BuildFailedError, BuildService

router = APIRouter()


@router.get("/health", status_code=status.HTTP_200_OK)
async def health() -> dict[str, str]:
    """Simple liveness probe."""
    return {"status": "ok"}


@router.post("/build", response_model=BuildResponse, status_code=status.HTTP_202_ACCEPTED)
async def build(request: BuildRequest) -> BuildResponse:
    """Run the configured pipelines over one asset."""
    service = BuildService()
    try:
        return await run_in_threadpool(service.build, request)
    except (FileNotFoundError, IsADirectoryError, ValueError) as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except BuildFailedError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
