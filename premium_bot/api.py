import logging

from fastapi import APIRouter, HTTPException, Request

from . import config

logger = logging.getLogger(__name__)

router = APIRouter()


# ------------------- health -------------------
@router.get("/health")
async def health():
    return {"ok": True}


async def _read_payload(req: Request) -> dict:
    # Click form-urlencoded yuboradi, test/proxy JSON ham bo'lishi mumkin
    if "application/json" in req.headers.get("content-type", ""):
        data = await req.json()
        return data if isinstance(data, dict) else {}
    form = await req.form()
    return dict(form)


# ------------------- click webhook -------------------
@router.post("/click/{token}")
async def click_webhook(token: str, req: Request):
    if token != config.WEBHOOK_TOKEN:
        raise HTTPException(status_code=404)

    container = req.app.state.container
    try:
        data = await _read_payload(req)
    except ValueError:
        return {"error": -8, "error_note": "Error in request from click"}

    result = await container.click.handle(data)
    if result.get("error") != 0:
        logger.info("Click callback rejected: %s (%s)", result.get("error"), result.get("error_note"))
    return result
