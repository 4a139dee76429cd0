from __future__ import annotations

from fastapi.openapi.utils import get_openapi

from app.settings import settings


def custom_openapi(app):
	def _gen():
		if app.openapi_schema:
			return app.openapi_schema
		openapi_schema = get_openapi(
			title="Sehra Messaging API",
			version=settings.git_commit[:7] if settings.git_commit else "dev",
			description="Direct messaging between couples, supervisors and vendors",
			routes=app.routes,
		)
		comps = openapi_schema.setdefault("components", {}).setdefault("securitySchemes", {})
		comps["bearerAuth"] = {"type": "http", "scheme": "bearer", "bearerFormat": "JWT"}
		openapi_schema["security"] = [{"bearerAuth": []}]
		app.openapi_schema = openapi_schema
		return openapi_schema

	app.openapi = _gen  # type: ignore[attr-defined]
