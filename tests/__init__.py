"""
Provider Router Test Suite
==========================

Run all tests:
    pytest tests/ -v

Security note: backends are stubbed with httpx.MockTransport or mocked
SDK clients. No real API keys or network access are needed.
"""
