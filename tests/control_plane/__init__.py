"""
Control plane test suite.

- Queue and worker: gate, claim order, retries, audit correlation, recovery
- Services and handlers: node, site, environment, backup, domain,
  promotion and release lifecycles driven through a worker
- End to end: the wired ControlPlane with background workers
"""
