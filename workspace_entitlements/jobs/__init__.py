"""
Scheduled jobs.

Each module is runnable with python -m and exposes a job class for tests:
- reset_billing_cycles: BillingCycleResetJob
- check_usage_alerts: UsageAlertCheckJob
- seed_catalog: catalog sync CLI
"""
