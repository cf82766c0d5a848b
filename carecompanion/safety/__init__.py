"""
safety — Family alert fan-out for emergencies, quick alerts, and missed medication.
"""
