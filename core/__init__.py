"""
Netatmo Crawler - Core Module
Measurement model, normalization, change publishing and run coordination.
"""
