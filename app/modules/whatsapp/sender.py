"""
Resolves the configured WhatsApp provider (Meta or Twilio).
"""

from app.config import get_settings


def get_provider():
    settings = get_settings()
    if settings.whatsapp_provider == "twilio":
        from app.modules.whatsapp.providers import twilio
        return twilio
    from app.modules.whatsapp.providers import meta
    return meta
