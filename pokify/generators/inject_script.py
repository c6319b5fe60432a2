"""
Inject Script Generator for the Pokify import service.
Fills the storefront reviews injector template with per-shop settings.
"""
import json
from pathlib import Path
from typing import Dict, Optional

from pokify.utils.logger import LayerLogger


TEMPLATE_PATH = Path(__file__).resolve().parent.parent / "static" / "reviews-inject.js"

POSITIONS = ("after", "before_buy", "end")

# Position names stored by older dashboards
POSITION_ALIASES = {
    "apos_descricao": "after",
    "antes_comprar": "before_buy",
    "final_pagina": "end",
}


def js_string_escape(value: Optional[str]) -> str:
    """Escape ``value`` for use inside a double-quoted JS string literal."""
    escaped = json.dumps(value or "")[1:-1]
    return escaped.replace("</", "<\\/")


def normalize_position(position: Optional[str]) -> str:
    position = (position or "after").strip()
    position = POSITION_ALIASES.get(position, position)
    return position if position in POSITIONS else "after"


class InjectScriptGenerator:
    """Renders ``reviews-inject.js`` with ``{{TOKEN}}`` placeholders substituted."""

    def __init__(self, template_path: Path = TEMPLATE_PATH):
        self.template_path = template_path
        self.logger = LayerLogger("inject_script")
        self._template: Optional[str] = None

    @property
    def template(self) -> str:
        if self._template is None:
            self._template = self.template_path.read_text(encoding="utf-8")
        return self._template

    def render(
        self,
        api_url: str,
        shop_domain: Optional[str] = None,
        user_id: Optional[str] = None,
        position: Optional[str] = None,
        custom_selector: Optional[str] = None,
    ) -> str:
        values: Dict[str, str] = {
            "API_URL": (api_url or "").rstrip("/"),
            "SHOP_DOMAIN": shop_domain or "default",
            "USER_ID": user_id or "anonymous",
            "POSITION": normalize_position(position),
            "CUSTOM_SELECTOR": custom_selector or "",
        }

        script = self.template
        for token, value in values.items():
            script = script.replace("{{%s}}" % token, js_string_escape(value))

        self.logger.log_action(
            "render_inject_script",
            "completed",
            shop_domain=values["SHOP_DOMAIN"],
            position=values["POSITION"],
        )
        return script
