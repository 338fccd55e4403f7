from typing import Optional

from fastapi.responses import JSONResponse


def success_response(data=None, status=200, headers: Optional[dict] = None):
    return JSONResponse(
        status_code=status,
        content={"ok": True, **(data or {})},
        headers=headers,
    )


def error_response(error, status=400, code: Optional[str] = None, ok: Optional[bool] = False, **extra):
    content = {"error": error}
    if ok is not None:
        content = {"ok": ok, **content}
    if code:
        content["code"] = code
    content.update(extra)
    return JSONResponse(status_code=status, content=content)
