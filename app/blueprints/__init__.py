"""
Professional Licensing Portal
Blueprint registry.

    workflow_bp    applications, actions, transition table
    assignment_bp  officers, assignment rules, assignments, escalation hook
    health_bp      readiness / liveness probes
"""
