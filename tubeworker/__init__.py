"""
Tube Worker

A client and worker runtime for beanstalkd-style work queues: a protocol adapter
for delayed, prioritized, time-limited jobs and a worker loop with retry,
deadline and self-termination policies.
"""

__version__ = "1.0.0"
