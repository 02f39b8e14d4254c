#!/usr/bin/env python3
"""
Serve the dev mock backend.

    python scripts/run_mock_backend.py --duplicate-phone --verification-sequence SENT,REJECTED
"""
import argparse

import uvicorn

from merchant_onboarding.dev.mock_backend import create_mock_app
from merchant_onboarding.dev.scenario import Scenario
from merchant_onboarding.settings import settings


def main():
    ap = argparse.ArgumentParser()
    ap.add_argument("--host", default=settings.MOCK_HOST)
    ap.add_argument("--port", type=int, default=settings.MOCK_PORT)
    ap.add_argument("--duplicate-phone", action="store_true")
    ap.add_argument("--id-phone-mismatch", action="store_true")
    ap.add_argument("--cr-invalid", action="store_true")
    ap.add_argument("--verification-sequence", default="SENT,UNDER_REVIEW,RECEIVED",
                    help="Comma-separated statuses returned by successive polls")
    ap.add_argument("--verification-ttl", type=int, default=settings.MOCK_VERIFICATION_TTL_SEC)
    args = ap.parse_args()

    scenario = Scenario(
        duplicate_phone=args.duplicate_phone,
        id_phone_mismatch=args.id_phone_mismatch,
        cr_valid=not args.cr_invalid,
        verification_sequence=[s.strip().upper() for s in args.verification_sequence.split(",") if s.strip()],
        verification_ttl_sec=args.verification_ttl,
    )
    print(f"[mock] serving on http://{args.host}:{args.port} scenario={scenario}")
    uvicorn.run(create_mock_app(scenario), host=args.host, port=args.port)


if __name__ == "__main__":
    main()
