"""In-page probes that explain why an SPA did not render."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .session import Session

_APP_SHELL_JS = """(() => {
  const app = document.getElementById('app');
  return {
    appExists: !!app,
    appVisible: app ? window.getComputedStyle(app).display !== 'none' : false,
    appChildren: app ? app.children.length : 0,
    appInnerHTML: app && app.innerHTML ? app.innerHTML.substring(0, 500) : '',
    vueMounted: !!document.querySelector('[data-v-app]'),
    windowVue: typeof window.__VUE__ !== 'undefined',
    scripts: document.querySelectorAll('script').length,
    styles: document.querySelectorAll('link[rel="stylesheet"], style').length,
    title: document.title,
    readyState: document.readyState,
    bodyClassName: document.body ? document.body.className : '',
  };
})()"""


def _visible_elements_js(limit: int) -> str:
    return f"""(() => {{
  const out = [];
  for (const el of document.querySelectorAll('body *')) {{
    const style = window.getComputedStyle(el);
    if (style.display === 'none' || style.visibility === 'hidden') continue;
    out.push({{
      tag: el.tagName.toLowerCase(),
      id: el.id || '',
      classes: Array.from(el.classList),
      text: (el.textContent || '').trim().substring(0, 50),
    }});
    if (out.length >= {json.dumps(int(limit))}) break;
  }}
  return out;
}})()"""


async def app_shell_status(session: Session, *, timeout: float | None = None) -> dict[str, Any]:
    """Mount state of the SPA root element and the framework markers around it."""
    result = await session.eval_js(_APP_SHELL_JS, timeout=timeout)
    return result if isinstance(result, dict) else {}


async def visible_elements(session: Session, limit: int = 20, *, timeout: float | None = None) -> list[dict[str, Any]]:
    """First `limit` visible elements under <body>, in document order."""
    limit = max(1, min(int(limit), 200))
    result = await session.eval_js(_visible_elements_js(limit), timeout=timeout)
    return [item for item in result if isinstance(item, dict)] if isinstance(result, list) else []


def describe_element(el: dict[str, Any]) -> str:
    tag = el.get("tag") or "?"
    ident = f"#{el['id']}" if el.get("id") else ""
    classes = "".join(f".{c}" for c in el.get("classes") or ())
    text = el.get("text") or ""
    return f"<{tag}>{ident}{classes}" + (f' "{text}"' if text else "")


__all__ = ["app_shell_status", "describe_element", "visible_elements"]
