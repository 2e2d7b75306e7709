#!/usr/bin/env python3
"""
Smoke checks for a running FreeHost server.
Exercises every public endpoint and prints a summary of what was found.

Usage: python smoke_api_check.py [base_url]
"""

import sys
import time
from io import BytesIO

import requests

BASE_URL = sys.argv[1].rstrip("/") if len(sys.argv) > 1 else "http://localhost:3000"
check_results = []


class CheckResult:
    def __init__(self, endpoint, method, status, message, severity="info"):
        self.endpoint = endpoint
        self.method = method
        self.status = status
        self.message = message
        self.severity = severity

    def __str__(self):
        status_symbol = "✓" if self.status == "PASS" else "✗" if self.status == "FAIL" else "!"
        return f"[{status_symbol}] {self.method} {self.endpoint}: {self.message}"


def log_check(endpoint, method, status, message, severity="info"):
    result = CheckResult(endpoint, method, status, message, severity)
    check_results.append(result)
    print(result)


def check_health_endpoint():
    """Check /health endpoint"""
    print("\n=== Checking Health Endpoint ===")
    try:
        response = requests.get(f"{BASE_URL}/health", timeout=5)
        if response.status_code == 200 and response.json().get("status") == "healthy":
            log_check("/health", "GET", "PASS", "Health check passed")
        else:
            log_check("/health", "GET", "WARN", f"Unhealthy: {response.text}", "warning")
    except requests.RequestException as e:
        log_check("/health", "GET", "FAIL", f"Exception: {str(e)}", "error")


def check_website_upload(project_name):
    """Upload a small website and return the upload payload"""
    print("\n=== Checking Website Upload ===")
    files = [
        ("files", ("index.html", BytesIO(b"<h1>smoke</h1>"), "text/html")),
        ("files", ("style.css", BytesIO(b"h1 { color: teal; }"), "text/css")),
    ]
    data = {"projectName": project_name, "projectType": "website"}
    try:
        response = requests.post(f"{BASE_URL}/api/upload", files=files, data=data, timeout=10)
        if response.status_code == 200 and response.json().get("success"):
            payload = response.json()
            log_check("/api/upload", "POST", "PASS", f"Project published at {payload['url']}")
            return payload
        log_check("/api/upload", "POST", "FAIL", f"Status: {response.status_code}, Response: {response.text}", "error")
    except requests.RequestException as e:
        log_check("/api/upload", "POST", "FAIL", f"Exception: {str(e)}", "error")
    return None


def check_static_serving(payload):
    """Fetch the uploaded index page through the static server"""
    print("\n=== Checking Static Serving ===")
    if not payload:
        log_check("/projects/<name>/", "GET", "SKIP", "No project from upload check")
        return
    name = payload["project"]["name"]
    try:
        response = requests.get(f"{BASE_URL}/projects/{name}/", timeout=10)
        if response.status_code == 200 and response.content == b"<h1>smoke</h1>":
            log_check(f"/projects/{name}/", "GET", "PASS", "Index page served")
        else:
            log_check(f"/projects/{name}/", "GET", "FAIL", f"Status: {response.status_code}", "error")
    except requests.RequestException as e:
        log_check(f"/projects/{name}/", "GET", "FAIL", f"Exception: {str(e)}", "error")


def check_listing(payload):
    """Check project and file listings reflect the upload"""
    print("\n=== Checking Listings ===")
    if not payload:
        log_check("/api/projects", "GET", "SKIP", "No project from upload check")
        return
    name = payload["project"]["name"]
    try:
        projects = requests.get(f"{BASE_URL}/api/projects", timeout=10).json()
        entry = next((item for item in projects if item.get("name") == name), None)
        if entry and entry.get("fileCount") == 2:
            log_check("/api/projects", "GET", "PASS", f"{len(projects)} project(s) listed")
        else:
            log_check("/api/projects", "GET", "FAIL", f"Project {name} missing or wrong count", "error")

        response = requests.get(f"{BASE_URL}/api/projects/{name}/files", timeout=10)
        names = sorted(item["name"] for item in response.json())
        if names == ["index.html", "style.css"]:
            log_check(f"/api/projects/{name}/files", "GET", "PASS", "File listing matches upload")
        else:
            log_check(f"/api/projects/{name}/files", "GET", "FAIL", f"Unexpected files: {names}", "error")
    except (requests.RequestException, ValueError) as e:
        log_check("/api/projects", "GET", "FAIL", f"Exception: {str(e)}", "error")


def check_invalid_inputs():
    """Check rejection paths"""
    print("\n=== Checking Invalid Inputs ===")
    try:
        response = requests.post(
            f"{BASE_URL}/api/upload",
            data={"projectName": "nothing"},
            files={"other": ("x.txt", BytesIO(b"x"), "text/plain")},
            timeout=10,
        )
        status = "PASS" if response.status_code == 400 else "FAIL"
        log_check("/api/upload", "POST", status, f"No files -> {response.status_code}")

        response = requests.post(
            f"{BASE_URL}/api/upload",
            data={"projectName": "bad-type"},
            files={"files": ("setup.exe", BytesIO(b"MZ"), "application/x-msdownload")},
            timeout=10,
        )
        status = "PASS" if response.status_code == 415 else "FAIL"
        log_check("/api/upload", "POST", status, f"Disallowed type -> {response.status_code}")

        response = requests.get(f"{BASE_URL}/api/projects/unknown-project/files", timeout=10)
        status = "PASS" if response.status_code == 404 else "FAIL"
        log_check("/api/projects/unknown-project/files", "GET", status, f"Unknown project -> {response.status_code}")
    except requests.RequestException as e:
        log_check("/api/upload", "POST", "FAIL", f"Exception: {str(e)}", "error")


def check_path_traversal(payload):
    """Probe the static server with encoded parent segments"""
    print("\n=== Checking Path Traversal ===")
    name = payload["project"]["name"] if payload else "smoke"
    for suffix in ["%2e%2e/%2e%2e/etc/passwd", "..%2f..%2f..%2fetc%2fpasswd"]:
        url = f"{BASE_URL}/projects/{name}/{suffix}"
        try:
            response = requests.get(url, timeout=10)
            if response.status_code == 200 and b"root:" in response.content:
                log_check(url, "GET", "FAIL", "Traversal returned host file", "critical")
            else:
                log_check(url, "GET", "PASS", f"Blocked with {response.status_code}")
        except requests.RequestException as e:
            log_check(url, "GET", "FAIL", f"Exception: {str(e)}", "error")


def check_stats():
    """Check /api/stats"""
    print("\n=== Checking Stats ===")
    try:
        stats = requests.get(f"{BASE_URL}/api/stats", timeout=10).json()
        if {"projects", "totalFiles", "totalSize", "publicUrl"} <= set(stats):
            log_check("/api/stats", "GET", "PASS", f"{stats['projects']} projects, {stats['totalSize']}")
        else:
            log_check("/api/stats", "GET", "FAIL", f"Missing keys: {stats}", "error")
    except (requests.RequestException, ValueError) as e:
        log_check("/api/stats", "GET", "FAIL", f"Exception: {str(e)}", "error")


def print_summary():
    print("\n" + "=" * 80)
    passed = sum(1 for r in check_results if r.status == "PASS")
    failed = [r for r in check_results if r.status == "FAIL"]
    print(f"Passed: {passed}  Failed: {len(failed)}  Total: {len(check_results)}")
    for r in failed:
        print(f"  - {r.method} {r.endpoint}: {r.message}")


def main():
    print(f"Base URL: {BASE_URL}")
    check_health_endpoint()
    payload = check_website_upload(f"Smoke Test {int(time.time())}")
    check_static_serving(payload)
    check_listing(payload)
    check_invalid_inputs()
    check_path_traversal(payload)
    check_stats()
    print_summary()

    if any(r.severity == "critical" for r in check_results):
        return 2
    if any(r.status == "FAIL" for r in check_results):
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
