from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

# Interactive API docs stay open; they expose the schema, never data
PUBLIC_PREFIXES = (
    "/docs",
    "/openapi",
    "/redoc",
)


class AuthMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        path = request.url.path

        if path.startswith(PUBLIC_PREFIXES):
            return await call_next(request)

        # Health check and anything outside /api/ is public
        if not path.startswith("/api/"):
            return await call_next(request)

        # Identity is issued elsewhere: every API call needs a Bearer token
        auth_header = request.headers.get("Authorization", "")
        if auth_header.startswith("Bearer "):
            # Token present; the route handler validates it
            return await call_next(request)

        return JSONResponse(status_code=401, content={"detail": "Not authenticated"})
