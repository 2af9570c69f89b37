"""
Template configuration for Jinja2
"""
from pathlib import Path

from fastapi.templating import Jinja2Templates

from app.utils.payment_display import format_npr, format_timestamp

# app/core/templates.py -> app/core -> app -> project root
_project_root = Path(__file__).resolve().parent.parent.parent
templates_dir = _project_root / "templates"

templates = Jinja2Templates(directory=str(templates_dir))

# Formatting helpers shared by the payment pages
templates.env.filters["npr"] = format_npr
templates.env.filters["timestamp"] = format_timestamp
