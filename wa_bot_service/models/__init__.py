"""
Modelos de datos del servicio.
"""
