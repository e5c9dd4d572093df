#!/usr/bin/env python3
"""Free the API port and start the Inventory Manager API with uvicorn."""
import os
import sys
import subprocess
import platform
import argparse
import socket
from urllib.parse import urlparse

# --- Configuration ---
APP_PATH = "services.api_gateway.main:app"
DEFAULT_PORT = int(os.getenv("API_PORT", "8000"))
MONGO_URL = os.getenv("MONGO_URL", "mongodb://localhost:27017/?replicaSet=rs0")

# --- Colors ---
class Colors:
    HEADER = '\033[95m'
    BLUE = '\033[94m'
    GREEN = '\033[92m'
    WARNING = '\033[93m'
    FAIL = '\033[91m'
    ENDC = '\033[0m'
    BOLD = '\033[1m'

if platform.system() == "Windows":
    os.system('color')  # Enable ANSI colors in Windows terminal

def log(msg, color=Colors.ENDC, bold=False):
    prefix = Colors.BOLD if bold else ""
    print(f"{prefix}{color}{msg}{Colors.ENDC}")

# --- Port Management ---

def get_process_on_port(port):
    """Finds the PID of the process listening on the given port."""
    if platform.system() == "Windows":
        result = subprocess.run(f'netstat -ano | findstr :{port}', shell=True, capture_output=True, text=True)
        for line in result.stdout.strip().splitlines():
            if f":{port}" in line and "LISTENING" in line:
                return line.split()[-1]
        return None
    try:
        result = subprocess.run(['lsof', '-t', f'-i:{port}'], capture_output=True, text=True)
    except FileNotFoundError:
        log("lsof not found; skipping port check", Colors.WARNING)
        return None
    if result.returncode == 0 and result.stdout:
        return result.stdout.strip().splitlines()[0]
    return None

def kill_process(pid):
    if platform.system() == "Windows":
        cmd = f"taskkill /F /PID {pid}"
        result = subprocess.run(cmd, shell=True, stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL)
    else:
        result = subprocess.run(['kill', '-9', str(pid)], stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL)
    return result.returncode == 0

def free_port(port):
    log(f"[1/3] Checking port {port}...", Colors.BLUE, bold=True)
    pid = get_process_on_port(port)
    if not pid:
        log(f"Port {port}: AVAILABLE", Colors.GREEN)
        return
    log(f"Port {port}: IN USE (PID: {pid}), killing", Colors.WARNING)
    if not kill_process(pid):
        log("Failed to free the port. Try running with sudo/Administrator", Colors.FAIL)
        sys.exit(1)

def check_mongo():
    log("[2/3] Checking MongoDB...", Colors.BLUE, bold=True)
    parsed = urlparse(MONGO_URL)
    host = parsed.hostname or "localhost"
    port = parsed.port or 27017
    try:
        with socket.create_connection((host, port), timeout=2):
            log(f"MongoDB reachable at {host}:{port}", Colors.GREEN)
    except OSError:
        log(f"MongoDB is not reachable at {host}:{port}. Purchases need a replica set.", Colors.WARNING)

# --- Main ---

def main():
    parser = argparse.ArgumentParser(description="Free the API port and start the Inventory Manager API")
    parser.add_argument("--port", type=int, default=DEFAULT_PORT)
    parser.add_argument("--reload", action="store_true", help="Restart on code changes")
    args = parser.parse_args()

    free_port(args.port)
    check_mongo()

    log("[3/3] Starting API...", Colors.BLUE, bold=True)
    log(f"- API:        http://localhost:{args.port}/api")
    log(f"- Swagger UI: http://localhost:{args.port}/docs")
    cmd = [sys.executable, "-m", "uvicorn", APP_PATH, "--host", "0.0.0.0", "--port", str(args.port)]
    if args.reload:
        cmd.append("--reload")
    sys.exit(subprocess.run(cmd).returncode)

if __name__ == "__main__":
    try:
        main()
    except KeyboardInterrupt:
        log("\nAborted by user.", Colors.WARNING)
        sys.exit(0)
