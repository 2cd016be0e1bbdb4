"""
Core modules for usage-governor.

This package contains the admission controls (window counter, tiered cost
limiter), usage aggregation, pricing, alerts and administrative reports.
"""
