"""Title and description templates for aggregated notifications and change records."""

AGGREGATED_TITLES = {
    "lead": ("New Lead Update", "{count} Lead Updates"),
    "project": ("New Project Update", "{count} Project Updates"),
    "message": ("New Message", "{count} New Messages"),
    "meeting": ("New Meeting", "{count} Meeting Updates"),
}

AGGREGATED_DESCRIPTIONS = {
    "lead": ("You have a new lead update", "You have {count} new lead updates"),
    "project": ("You have a new project update", "You have {count} new project updates"),
    "message": ("You have a new message", "You have {count} new messages"),
    "meeting": ("You have a new meeting update", "You have {count} new meeting updates"),
}

CHANGE_DESCRIPTIONS = {
    "lead": {
        "created": "New lead created",
        "updated": "Lead information updated",
        "deleted": "Lead deleted",
        "status_changed": "Lead status changed",
    },
    "project": {
        "created": "New project created",
        "updated": "Project information updated",
        "deleted": "Project deleted",
        "status_changed": "Project status changed",
    },
    "message": {
        "created": "New message received",
        "updated": "Message updated",
        "deleted": "Message deleted",
        "status_changed": "Message status changed",
    },
    "meeting": {
        "created": "New meeting scheduled",
        "updated": "Meeting details updated",
        "deleted": "Meeting cancelled",
        "status_changed": "Meeting status changed",
    },
}


def aggregated_title(entity_type: str, count: int) -> str:
    single, plural = AGGREGATED_TITLES.get(entity_type, ("{count} Updates", "{count} Updates"))
    return (single if count == 1 else plural).format(count=count)


def aggregated_description(entity_type: str, count: int) -> str:
    single, plural = AGGREGATED_DESCRIPTIONS.get(entity_type, ("You have {count} new updates", "You have {count} new updates"))
    return (single if count == 1 else plural).format(count=count)


def change_description(entity_type: str, change_type: str) -> str:
    return CHANGE_DESCRIPTIONS.get(entity_type, {}).get(change_type, f"{entity_type} {change_type}".replace("_", " "))
