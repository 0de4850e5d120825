"""
Table Rush Simulation Script

Simulates a busy table: many diners scan the same QR code at once, each
places an order, some tap "order" twice, and staff then move every order
along. Checks the concurrency guarantees along the way.
Run from project root after seeding: python scripts/simulate.py --token <admin token>
"""

import asyncio
import sys
import os
import random
import time
import argparse
from datetime import datetime
from typing import Any, Optional

import httpx
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
# Windows event loop fix
if sys.platform == "win32":
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())

# Configuration
API_BASE_URL = "http://localhost:8001"
TOTAL_DINERS = 20

FIRST_NAMES = ["John", "Jane", "Mike", "Sarah", "Tom", "Emma", "David", "Lisa", "Chris", "Amy"]
SUGAR_LEVELS = ["0%", "25%", "50%", "75%", "100%"]


def auth(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def generate_order_payload(product_size_id: int, topping_id: Optional[int]) -> dict[str, Any]:
    return {
        "customer_name": random.choice(FIRST_NAMES),
        "items": [
            {
                "product_size_id": product_size_id,
                "quantity": random.randint(1, 3),
                "sugar_level": random.choice(SUGAR_LEVELS),
                "toppings": [{"topping_id": topping_id}] if topping_id else [],
            }
        ],
    }


# =============================================================================
# STEPS
# =============================================================================

async def table_invitation(client: httpx.AsyncClient, admin_token: str, table: str) -> Optional[str]:
    """Create the table invitation, or reuse the active one."""
    response = await client.post(
        f"{API_BASE_URL}/api/admin/invitations",
        json={"table_number": table},
        headers=auth(admin_token),
    )
    if response.status_code == 201:
        return response.json()["token"]
    if response.status_code == 409:
        return response.json()["existing_invitation"]["token"]
    print(f"   Failed to create invitation: {response.text[:100]}")
    return None


async def redeem(client: httpx.AsyncClient, invitation_token: str, diner: int) -> dict[str, Any]:
    start_time = time.time()
    try:
        response = await client.post(f"{API_BASE_URL}/api/auth/invitation/{invitation_token}", timeout=30.0)
        elapsed = round(time.time() - start_time, 3)
        if response.status_code == 200:
            data = response.json()
            return {
                "diner": diner,
                "success": True,
                "user_id": data["user"]["id"],
                "token": data["token"],
                "session_id": data["session_id"],
                "time": elapsed,
            }
        return {"diner": diner, "success": False, "error": response.text[:100], "time": elapsed}
    except Exception as e:
        elapsed = round(time.time() - start_time, 3)
        return {"diner": diner, "success": False, "error": str(e)[:100], "time": elapsed}


async def place_order(client: httpx.AsyncClient, session: dict, payload: dict) -> dict[str, Any]:
    start_time = time.time()
    try:
        response = await client.post(
            f"{API_BASE_URL}/api/orders",
            json=payload,
            headers=auth(session["token"]),
            timeout=30.0,
        )
        elapsed = round(time.time() - start_time, 3)
        result = {"diner": session["diner"], "status": response.status_code, "time": elapsed}
        if response.status_code == 201:
            order = response.json()["order"]
            result.update(order_id=order["id"], order_number=order["order_number"], total=order["total_price"])
        else:
            result["error"] = response.text[:100]
        return result
    except Exception as e:
        elapsed = round(time.time() - start_time, 3)
        return {"diner": session["diner"], "status": None, "error": str(e)[:100], "time": elapsed}


async def advance(client: httpx.AsyncClient, staff_token: str, order_id: int, new_status: str) -> int:
    response = await client.patch(
        f"{API_BASE_URL}/api/orders/{order_id}/status",
        json={"order_status": new_status},
        headers=auth(staff_token),
    )
    return response.status_code


# =============================================================================
# MAIN SIMULATION RUNNER
# =============================================================================

async def run_simulation(
    admin_token: str,
    table: str,
    num_diners: int = TOTAL_DINERS,
    product_size_id: int = 1,
    topping_id: Optional[int] = None,
) -> dict[str, Any]:
    print("=" * 70)
    print("TABLE RUSH SIMULATION")
    print("=" * 70)
    print(f"Diners: {num_diners}")
    print(f"Table: {table}")
    print(f"Target: {API_BASE_URL}")
    print(f"Started: {datetime.now().strftime('%H:%M:%S')}")
    print("=" * 70)

    start_time = time.time()
    checks: dict[str, bool] = {}

    async with httpx.AsyncClient() as client:
        invitation_token = await table_invitation(client, admin_token, table)
        if invitation_token is None:
            return {"success": False}

        # 1. Everyone scans the QR code at once
        print("\nRedeeming invitation concurrently...")
        sessions = await asyncio.gather(*[redeem(client, invitation_token, i + 1) for i in range(num_diners)])
        ok_sessions = [s for s in sessions if s["success"]]
        guest_ids = {s["user_id"] for s in ok_sessions}
        print(f"   Sessions: {len(ok_sessions)}/{num_diners}, guest accounts: {len(guest_ids)}")
        checks["one guest account per table"] = len(guest_ids) == 1

        # 2. Each diner double-taps "order"
        print("\nPlacing orders (two taps per diner)...")
        tasks = []
        for s in ok_sessions:
            payload = generate_order_payload(product_size_id, topping_id)
            tasks.append(place_order(client, s, payload))
            tasks.append(place_order(client, s, payload))
        placed = await asyncio.gather(*tasks)

        created = [r for r in placed if r["status"] == 201]
        conflicts = [r for r in placed if r["status"] == 409]
        failed = [r for r in placed if r["status"] not in (201, 409)]
        print(f"   Created: {len(created)}, rejected as duplicate: {len(conflicts)}, failed: {len(failed)}")
        checks["one active order per session"] = len(created) == len(ok_sessions)
        numbers = [r["order_number"] for r in created]
        checks["unique order numbers"] = len(numbers) == len(set(numbers))

        # 3. Staff move every order along
        print("\nAdvancing orders...")
        codes = await asyncio.gather(*[
            advance(client, admin_token, r["order_id"], "ready_for_pickup") for r in created
        ])
        checks["status updates succeed"] = all(code == 200 for code in codes)

        if ok_sessions:
            response = await client.get(
                f"{API_BASE_URL}/api/notifications/unread-count",
                headers=auth(ok_sessions[0]["token"]),
            )
            if response.status_code == 200:
                print(f"   Unread notifications for table {table}: {response.json()['unread_count']}")

    total_time = round(time.time() - start_time, 2)

    # Print results
    print("\n" + "=" * 70)
    print("SIMULATION RESULTS")
    print("=" * 70)
    for name, passed in checks.items():
        print(f"   [{'PASS' if passed else 'FAIL'}] {name}")
    print(f"\n   Total Time: {total_time}s")

    if created:
        avg_time = round(sum(r["time"] for r in created) / len(created), 3)
        print(f"   Average order response: {avg_time}s")

    if failed:
        print("\n   Failed order details (showing first 5):")
        for f in failed[:5]:
            print(f"   Diner #{f['diner']}: {f.get('error', 'Unknown error')}")

    print("=" * 70)
    return {"success": all(checks.values()), "checks": checks, "total_time": total_time}


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Table Rush Simulation Script")
    parser.add_argument("--token", required=True, help="Admin bearer token (see scripts/seed.py)")
    parser.add_argument("--table", default=str(random.randint(1, 99)), help="Table number")
    parser.add_argument("--diners", type=int, default=TOTAL_DINERS, help="Number of diners")
    parser.add_argument("--product-size", type=int, default=1, help="Product size id to order")
    parser.add_argument("--topping", type=int, default=None, help="Topping id to add")
    args = parser.parse_args()

    summary = asyncio.run(run_simulation(
        admin_token=args.token,
        table=args.table,
        num_diners=args.diners,
        product_size_id=args.product_size,
        topping_id=args.topping,
    ))
    sys.exit(0 if summary.get("success") else 1)
