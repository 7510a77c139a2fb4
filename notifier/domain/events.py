"""
Webhook event catalog.

Subscriptions may only subscribe to names listed here. Producers are free to
dispatch any name, but nothing matches an event that is not in the catalog.
"""

TEST_EVENT = "test.ping"

WEBHOOK_EVENTS: dict[str, str] = {
    # Compliance
    "compliance.score_changed": "Compliance score changed",
    "compliance.status_changed": "Compliance status changed",
    "compliance.action_required": "Compliance action required",
    # Spacecraft
    "spacecraft.created": "Spacecraft created",
    "spacecraft.updated": "Spacecraft updated",
    "spacecraft.status_changed": "Spacecraft status changed",
    # Authorization
    "authorization.submitted": "Authorization submitted",
    "authorization.approved": "Authorization approved",
    "authorization.rejected": "Authorization rejected",
    "authorization.status_changed": "Authorization status changed",
    # Reports
    "report.generated": "Report generated",
    "report.submitted": "Report submitted to NCA",
    "report.acknowledged": "Report acknowledged by NCA",
    # Incidents
    "incident.created": "Incident created",
    "incident.updated": "Incident updated",
    "incident.escalated": "Incident escalated",
    "incident.resolved": "Incident resolved",
    # Deadlines
    "deadline.approaching": "Deadline approaching",
    "deadline.overdue": "Deadline overdue",
    "deadline.completed": "Deadline completed",
    # Documents
    "document.uploaded": "Document uploaded",
    "document.approved": "Document approved",
    "document.rejected": "Document rejected",
    # Organization
    "member.joined": "Member joined organization",
    "member.left": "Member left organization",
    "member.role_changed": "Member role changed",
}


def is_known_event(name: str) -> bool:
    return name in WEBHOOK_EVENTS


def available_events() -> list[dict[str, str]]:
    """Catalog as a list for the management UI."""
    return [
        {"event": name, "description": description}
        for name, description in WEBHOOK_EVENTS.items()
    ]
