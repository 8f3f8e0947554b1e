#!/usr/bin/env python3
"""
Smoke check for a deployed auth and token service.

Only sends requests that leave no state behind: health probes, an
unauthenticated session check and payloads the service must reject.
"""

import asyncio
import sys
from typing import Any, Dict, Optional

import httpx


async def check_endpoint(
    client: httpx.AsyncClient,
    url: str,
    method: str = "GET",
    data: Optional[Dict[str, Any]] = None,
    expected_status: int = 200
) -> Dict[str, Any]:
    """Call one endpoint and compare the status code with the expected one."""
    try:
        if method == "GET":
            response = await client.get(url)
        elif method == "POST":
            response = await client.post(url, json=data)
        else:
            raise ValueError(f"Unsupported method: {method}")

        return {
            "status_code": response.status_code,
            "success": response.status_code == expected_status,
            "error": None if response.status_code == expected_status else f"expected HTTP {expected_status}"
        }
    except httpx.HTTPError as e:
        return {"status_code": None, "success": False, "error": str(e)}


async def check_deployment(base_url: str) -> bool:
    """Run the smoke checks against base_url."""
    print(f"Checking deployment at: {base_url}")
    print("=" * 60)

    checks = [
        {"name": "Health Check", "url": "/healthz"},
        {"name": "Auth Backend Health", "url": "/api/auth/health"},
        {"name": "Metrics", "url": "/metrics"},
        {"name": "Session Required", "url": "/api/auth/me", "expected_status": 401},
        {
            "name": "Phone Validation",
            "url": "/api/auth/signup",
            "method": "POST",
            "data": {"phone": "not-a-phone"},
            "expected_status": 422
        },
        {
            "name": "Malformed Payment Callback",
            "url": "/api/mpesa/callback",
            "method": "POST",
            "data": {"Body": {}},
            "expected_status": 400
        },
    ]

    results = []
    async with httpx.AsyncClient(base_url=base_url, timeout=30.0) as client:
        for check in checks:
            print(f"Checking: {check['name']}")
            result = await check_endpoint(
                client,
                check["url"],
                check.get("method", "GET"),
                check.get("data"),
                check.get("expected_status", 200)
            )
            results.append({**check, **result})

            if result["success"]:
                print(f"  OK     - Status: {result['status_code']}")
            else:
                print(f"  FAILED - Status: {result['status_code']}, Error: {result['error']}")

    passed = sum(1 for r in results if r["success"])
    print("=" * 60)
    print(f"Checks Passed: {passed}/{len(results)}")

    for failed in (r for r in results if not r["success"]):
        print(f"  - {failed['name']}: {failed['error']}")

    return passed == len(results)


async def main():
    if len(sys.argv) != 2:
        print("Usage: python deployment_check.py <base_url>")
        print("Example: python deployment_check.py https://smartplanner-auth.onrender.com")
        sys.exit(1)

    success = await check_deployment(sys.argv[1].rstrip('/'))
    sys.exit(0 if success else 1)


if __name__ == "__main__":
    asyncio.run(main())
