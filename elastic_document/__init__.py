"""
Elastic document core package.

This package focuses on the job-processing pipeline. It exposes dataclasses
for jobs and their sources, the claim coordinator that guards the expensive
stages, the extraction stage, the dual generation fan-in, the event stream
transport, and a client that follows a job's stream across reconnects.
"""
