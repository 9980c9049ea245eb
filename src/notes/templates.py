"""Daily note templates and placeholder rendering."""

import re
from datetime import date

from app.config_models import DEFAULT_DAILY_TEMPLATE

PROMPT_PLACEHOLDER = "{{prompt}}"

_DATE_FORMAT = re.compile(r"\{\{date:([^}]+)\}\}")
_DATE_TOKENS = re.compile(r"YYYY|MMMM|MM|DD|dddd")


def format_date(day: date, fmt: str) -> str:
    """Render YYYY / MM / DD / MMMM (month name) / dddd (weekday name) tokens."""
    tokens = {
        "YYYY": f"{day.year:04d}",
        "MM": f"{day.month:02d}",
        "DD": f"{day.day:02d}",
        "MMMM": day.strftime("%B"),
        "dddd": day.strftime("%A"),
    }
    return _DATE_TOKENS.sub(lambda m: tokens[m.group(0)], fmt)


def title_for(day: date) -> str:
    return f"{day.strftime('%A, %B')} {day.day}, {day.year}"


def render_template(template: str, day: date) -> str:
    """Fill date/title placeholders; ``{{prompt}}`` is left for prompt insertion."""
    text = _DATE_FORMAT.sub(lambda m: format_date(day, m.group(1)), template or DEFAULT_DAILY_TEMPLATE)
    text = text.replace("{{title}}", title_for(day))
    return text.replace("{{date}}", format_date(day, "YYYY-MM-DD"))
