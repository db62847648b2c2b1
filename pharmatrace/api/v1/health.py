from fastapi import APIRouter, Request

router = APIRouter()


@router.get("/health")
async def health(request: Request):
    rid = getattr(request.state, "request_id", None)
    loop = getattr(request.app.state, "reconciliation_loop", None)
    return {
        "status": "ok",
        "request_id": rid,
        "reconciliation": "running" if loop is not None and loop.running else "stopped",
    }
