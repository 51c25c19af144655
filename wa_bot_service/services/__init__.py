"""
Servicios del gestor de sesiones.

Este módulo contiene los servicios:
- SessionManager: Ciclo de vida de sesiones, registro y heartbeat
- CredentialStore: Credenciales persistentes por sesión
- WebhookNotifier: Notificaciones best-effort al backend
- BaileysBridgeClient: Conexión WhatsApp vía bridge Node.js
"""
