"""Server-rendered shells for the browser entry points.

The gate decides who reaches these; the handlers only render.
"""

from __future__ import annotations

from html import escape

from fastapi import APIRouter, Depends
from fastapi.responses import HTMLResponse

from tenantauth.api.routes import get_admin_identity, get_identity
from tenantauth.service.auth import AuthContext
from tenantauth.service.runtime import get_runtime

pages = APIRouter(include_in_schema=False)

_LAYOUT = """<!doctype html>
<html lang="en">
<head><meta charset="utf-8"><title>{title}</title></head>
<body>
{body}
</body>
</html>
"""


def _render(title: str, body: str) -> HTMLResponse:
    return HTMLResponse(_LAYOUT.format(title=escape(title), body=body))


@pages.get("/login")
async def login_page() -> HTMLResponse:
    return _render(
        "Sign in",
        """<form method="post" action="/api/auth/login" id="login-form">
  <label>Email <input type="email" name="email" required></label>
  <label>Password <input type="password" name="password" required></label>
  <label><input type="checkbox" name="rememberMe"> Remember me</label>
  <button type="submit">Sign in</button>
</form>""",
    )


@pages.get("/dashboard")
async def dashboard_page(identity: AuthContext = Depends(get_identity)) -> HTMLResponse:
    user = get_runtime().auth.current_user(identity)
    return _render("Dashboard", f"<h1>Welcome, {escape(user.display_name)}</h1>")


@pages.get("/admin/users")
async def admin_users_page(admin: AuthContext = Depends(get_admin_identity)) -> HTMLResponse:
    users = get_runtime().auth.list_users(admin)
    rows = "\n".join(
        f"<tr><td>{escape(u.email)}</td><td>{escape(u.role)}</td>"
        f"<td>{'active' if u.is_active else 'inactive'}</td></tr>"
        for u in users
    )
    return _render(
        "Users",
        f"<table><thead><tr><th>Email</th><th>Role</th><th>Status</th></tr></thead>"
        f"<tbody>{rows}</tbody></table>",
    )
