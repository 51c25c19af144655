"""
Utilidades y helpers para el servicio.

Este módulo contiene:
- config.py: Gestión de configuración
- logger.py: Configuración de logging
- qr.py: Codificación de QR de emparejamiento
"""
