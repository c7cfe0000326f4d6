"""
nexus-verifier — integration test package

File: tests/integration/__init__.py

Purpose
- Test package marker for suites that run real subprocesses, the local sandbox, and git.
- Keep this file lightweight; it must not import heavy modules at collection time.
"""
