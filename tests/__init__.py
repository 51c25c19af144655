"""
Test suite para el servicio de sesiones WhatsApp.

Organización de tests:
- test_services/: Tests para gestor de sesiones, credenciales, webhooks y bridge
- test_models/: Tests para modelos Pydantic
- test_utils/: Tests para configuración y QR
- test_api.py: Tests de la API de control
"""
