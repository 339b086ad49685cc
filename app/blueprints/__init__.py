"""
QMS Change Management Core
Blueprint registry.

    version_bp       project versions, compare, restore
    change_bp        change events, approvals, workflows, notifications
    propagation_bp   propagation rules, control plan generation, review flags
    risk_bp          risk analytics
    jobs_bp          scheduled job administration
"""
