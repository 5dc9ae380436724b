#!/usr/bin/env python3
"""
Integration Test Suite for the Storefront API

Usage:
    1. Start the server: python start_storefront.py
    2. Install dependencies: pip install requests
    3. Run the script: python tests/integration_test.py

This script tests the full flow against a running server:
    - Health
    - Catalog browsing
    - Checkout (price taken from the catalog, stock decremented)
    - Admin login and order status workflow
    - Security/Negative Tests

Output:
    - Console logs with pass/fail status
    - integration_test_results.json report
"""
import requests
import json
import os
import time
import sys
from datetime import datetime
from typing import Dict, Any

# Configuration
BASE_URL = os.getenv("STOREFRONT_URL", "http://localhost:8000")
ADMIN_USERNAME = os.getenv("ADMIN_USERNAME", "admin")
ADMIN_PASSWORD = os.getenv("ADMIN_PASSWORD", "admin123")
RESULTS_FILE = "integration_test_results.json"

CUSTOMER = {
    "customer_name": "Integration Shopper",
    "customer_email": "shopper@example.com",
    "customer_phone": "9876543210",
    "address": "42 Residency Road",
    "city": "Bengaluru",
    "state": "Karnataka",
    "pin_code": "560025",
    "payment_method": "cash",
}

# Colors
class Colors:
    HEADER = '\033[95m'
    BLUE = '\033[94m'
    GREEN = '\033[92m'
    FAIL = '\033[91m'
    ENDC = '\033[0m'

class TestRunner:
    def __init__(self):
        self.results = []
        self.session = requests.Session()
        self.store: Dict[str, Any] = {}
        self.start_time = time.time()

    def log(self, message: str, color: str = Colors.ENDC):
        print(f"{color}{message}{Colors.ENDC}")

    def save_result(self, name: str, status: str, duration: float, error: str = None):
        self.results.append({
            "test_name": name,
            "status": status,
            "duration": duration,
            "error": error,
            "timestamp": datetime.utcnow().isoformat()
        })
        color = Colors.GREEN if status == "PASS" else Colors.FAIL
        self.log(f"[{status}] {name} ({duration:.4f}s)", color)
        if error:
            self.log(f"  Error: {error}", Colors.FAIL)

    def run_test(self, name: str, func, *args, **kwargs):
        start = time.time()
        try:
            func(*args, **kwargs)
            self.save_result(name, "PASS", time.time() - start)
        except AssertionError as e:
            self.save_result(name, "FAIL", time.time() - start, str(e))
        except (requests.RequestException, KeyError, ValueError) as e:
            self.save_result(name, "ERROR", time.time() - start, f"{type(e).__name__}: {e}")

    def assert_status(self, response, expected: int):
        if response.status_code != expected:
            raise AssertionError(f"Expected status {expected}, got {response.status_code}. Body: {response.text}")

    def admin_headers(self) -> dict:
        return {"Authorization": f"Bearer {self.store['admin_token']}"}

    def save_report(self):
        with open(RESULTS_FILE, "w") as f:
            json.dump({
                "summary": {
                    "total": len(self.results),
                    "passed": len([r for r in self.results if r["status"] == "PASS"]),
                    "failed": len([r for r in self.results if r["status"] != "PASS"]),
                    "total_duration": time.time() - self.start_time
                },
                "results": self.results
            }, f, indent=2)
        self.log(f"\nTest results saved to {RESULTS_FILE}", Colors.BLUE)

# --- Checks ---

def check_health(runner: TestRunner):
    resp = runner.session.get(f"{BASE_URL}/health")
    runner.assert_status(resp, 200)
    if resp.json()["status"] != "healthy":
        raise AssertionError("System is not healthy")

# Phase 1: Admin

def login_admin(runner: TestRunner):
    resp = runner.session.post(f"{BASE_URL}/api/auth/login", json={
        "username": ADMIN_USERNAME,
        "password": ADMIN_PASSWORD
    })
    runner.assert_status(resp, 200)
    runner.store["admin_token"] = resp.json()["data"]["access_token"]

def create_product(runner: TestRunner):
    product_data = {
        "name": f"Integration Lamp {int(time.time())}",
        "description": "Warm white, dimmable",
        "price": 150000,
        "sale_price": 120000,
        "stock": 3,
    }
    resp = runner.session.post(f"{BASE_URL}/api/admin/products", json=product_data, headers=runner.admin_headers())
    runner.assert_status(resp, 201)
    product = resp.json()["data"]
    runner.store["product_id"] = product["id"]
    runner.store["product_name"] = product["name"]

# Phase 2: Catalog

def list_products(runner: TestRunner):
    resp = runner.session.get(f"{BASE_URL}/api/products")
    runner.assert_status(resp, 200)
    products = resp.json()["data"]["products"]
    if not any(p["id"] == runner.store["product_id"] for p in products):
        raise AssertionError("Created product not found in list")

def get_product_details(runner: TestRunner):
    resp = runner.session.get(f"{BASE_URL}/api/products/{runner.store['product_id']}")
    runner.assert_status(resp, 200)
    data = resp.json()["data"]
    if data["name"] != runner.store["product_name"]:
        raise AssertionError("Product details mismatch")
    if data["effective_price"] != 120000:
        raise AssertionError(f"Expected sale price to apply, got {data['effective_price']}")

# Phase 3: Checkout

def create_order(runner: TestRunner):
    data = {**CUSTOMER, "items": [{"product_id": runner.store["product_id"], "quantity": 2, "price": 1}]}
    resp = runner.session.post(f"{BASE_URL}/api/orders", json=data)
    runner.assert_status(resp, 201)
    order = resp.json()["data"]
    runner.store["order_id"] = order["id"]
    if order["status"] != "pending":
        raise AssertionError("Order status should be pending")
    if order["total_amount"] != 240000:
        raise AssertionError(f"Order total should use catalog price, got {order['total_amount']}")

def verify_stock_decremented(runner: TestRunner):
    resp = runner.session.get(f"{BASE_URL}/api/products/{runner.store['product_id']}")
    runner.assert_status(resp, 200)
    if resp.json()["data"]["stock"] != 1:
        raise AssertionError(f"Expected stock 1, got {resp.json()['data']['stock']}")

def reject_oversell(runner: TestRunner):
    data = {**CUSTOMER, "items": [{"product_id": runner.store["product_id"], "quantity": 2}]}
    resp = runner.session.post(f"{BASE_URL}/api/orders", json=data)
    runner.assert_status(resp, 409)

# Phase 4: Order workflow

def advance_order_status(runner: TestRunner):
    oid = runner.store["order_id"]
    for status in ("processing", "shipped", "delivered"):
        resp = runner.session.put(f"{BASE_URL}/api/admin/orders/{oid}/status",
                                  json={"status": status}, headers=runner.admin_headers())
        runner.assert_status(resp, 200)

    resp = runner.session.put(f"{BASE_URL}/api/admin/orders/{oid}/status",
                              json={"status": "cancelled"}, headers=runner.admin_headers())
    runner.assert_status(resp, 400)

def check_dashboard(runner: TestRunner):
    resp = runner.session.get(f"{BASE_URL}/api/admin/dashboard", headers=runner.admin_headers())
    runner.assert_status(resp, 200)
    if resp.json()["data"]["orders_by_status"]["delivered"] < 1:
        raise AssertionError("Delivered order missing from dashboard")

# Phase 5: Negative Tests

def negative_tests(runner: TestRunner):
    # Invalid Token
    headers = {"Authorization": "Bearer invalid_token"}
    resp = runner.session.get(f"{BASE_URL}/api/admin/orders", headers=headers)
    if resp.status_code != 401:
        raise AssertionError(f"Expected 401 for invalid token, got {resp.status_code}")

    # Bad Data (order without items and with a bad email)
    resp = runner.session.post(f"{BASE_URL}/api/orders", json={**CUSTOMER, "customer_email": "x", "items": []})
    if resp.status_code != 400:
        raise AssertionError(f"Expected 400 for invalid order, got {resp.status_code}")
    fields = {d["field"] for d in resp.json()["details"]}
    if fields != {"customer_email", "items"}:
        raise AssertionError(f"Unexpected validation fields: {fields}")

def cleanup(runner: TestRunner):
    resp = runner.session.delete(f"{BASE_URL}/api/admin/products/{runner.store['product_id']}",
                                 headers=runner.admin_headers())
    runner.assert_status(resp, 200)


def main():
    runner = TestRunner()
    runner.log("Starting Integration Tests...\n", Colors.HEADER)

    runner.run_test("Health Check", check_health, runner)

    runner.run_test("Admin Login", login_admin, runner)
    runner.run_test("Create Product", create_product, runner)

    runner.run_test("List Products", list_products, runner)
    runner.run_test("Get Product Details", get_product_details, runner)

    runner.run_test("Create Order", create_order, runner)
    runner.run_test("Verify Stock Decremented", verify_stock_decremented, runner)
    runner.run_test("Reject Oversell", reject_oversell, runner)

    runner.run_test("Advance Order Status", advance_order_status, runner)
    runner.run_test("Dashboard", check_dashboard, runner)

    runner.run_test("Negative Tests", negative_tests, runner)
    runner.run_test("Cleanup", cleanup, runner)

    runner.save_report()

    if any(r["status"] != "PASS" for r in runner.results):
        sys.exit(1)

if __name__ == "__main__":
    main()
