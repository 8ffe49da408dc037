from fastapi import APIRouter

router = APIRouter()

@router.get("/peer-review/health")
async def health_check():
    return {"status": "ok"}
