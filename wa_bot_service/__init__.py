"""
WhatsApp Bot Session Service

Multiplexa conexiones WhatsApp concurrentes (una por tenant ``sessionId``),
reenvía mensajes entrantes al backend vía webhooks y devuelve por WhatsApp
las respuestas del backend.
"""

__version__ = "1.0.0"
__description__ = "Gestor multi-tenant de sesiones WhatsApp con webhooks"
