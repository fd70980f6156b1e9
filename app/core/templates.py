# app/core/templates.py
"""Invitation template rendering."""
from __future__ import annotations

from app.core.domain import Contact, Job


def format_job_date(job: Job) -> str:
    # "March 5, 2025"
    start = job.start_time
    return f"{start.strftime('%B')} {start.day}, {start.year}"


def format_job_time(job: Job) -> str:
    # "9:30 AM"
    start = job.start_time
    hour = start.hour % 12 or 12
    return f"{hour}:{start.minute:02d} {'AM' if start.hour < 12 else 'PM'}"


def render_template(content: str, contact: Contact, job: Job) -> str:
    """Fill {FirstName} {LastName} {JobName} {Date} {Time} {Location} placeholders."""
    replacements = {
        "{FirstName}": contact.first_name,
        "{LastName}": contact.last_name,
        "{JobName}": job.name,
        "{Date}": format_job_date(job),
        "{Time}": format_job_time(job),
        "{Location}": job.location or "",
    }
    rendered = content
    for placeholder, value in replacements.items():
        rendered = rendered.replace(placeholder, value)
    return rendered
