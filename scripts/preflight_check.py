#!/usr/bin/env python3
import sys
import os

print("Running preflight import check...")
try:
    # Dummy env so config load never trips on a missing variable
    os.environ.setdefault("REDIS_URL", "redis://localhost:6379/0")

    import merchant_onboarding.core.orchestrator
    print("Import merchant_onboarding.core.orchestrator: OK")

    import merchant_onboarding.dev.mock_backend
    print("Import merchant_onboarding.dev.mock_backend: OK")

    print("Preflight check passed.")
    sys.exit(0)
except Exception as e:
    print(f"Preflight check FAILED: {e}")
    import traceback
    traceback.print_exc()
    sys.exit(1)
