"""
Job Store

Persistence backend for a job queue: durable job records, atomic reservation
of ready jobs by workers, and reclamation of jobs abandoned by dead or slow
workers.
"""

__version__ = "1.0.0"
