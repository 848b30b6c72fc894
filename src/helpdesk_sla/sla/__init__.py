"""
SLA Engine Module
=================

Bounded context for helpdesk service level agreements.

Responsibilities:
- Compute first response, resolution and next response deadlines in
  business time
- Track applied SLAs and next response events to met or breached
- Schedule warning and breach notifications from policy rules
- Render and deliver due notifications to agents
- Expose SLA policies and lifecycle hooks over HTTP
"""

__version__ = "1.0.0"
