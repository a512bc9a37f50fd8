"""
Built-in detectors, grouped by vulnerability family.
"""
