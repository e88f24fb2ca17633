from .container import WhatsAppContainer, get_container, get_whatsapp_container

__all__ = ["WhatsAppContainer", "get_container", "get_whatsapp_container"]
