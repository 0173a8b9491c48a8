"""Test plans: role dispatch and the provider / requestor workflows.

Test cases:
- speed-test: one provider publishes blocks, requestors fetch and time them
- example: fleet smoke test, no transfer
"""
