"""
driveaudit core: shared types, risk scoring, cancellation and resilience helpers.
"""
