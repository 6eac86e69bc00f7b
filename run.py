import subprocess
import sys
import os
from dotenv import load_dotenv

def main():
    """
    Centralized script runner.
    Loads the .env file and then executes the given command.
    """
    project_root = os.path.dirname(os.path.abspath(__file__))
    sys.path.insert(0, project_root)

    load_dotenv()

    if len(sys.argv) < 2:
        print("Usage: python run.py <command> [args...]")
        print("Commands: serve, initdb, test")
        sys.exit(1)

    command = sys.argv[1]
    args = sys.argv[2:]

    env = {**os.environ}

    if command == "serve":
        host = os.environ.get("HOST", "0.0.0.0")
        port = os.environ.get("PORT", "8000")
        cmd = ["uvicorn", "passkey_server.main:app", "--host", host, "--port", port, *args]
    elif command == "initdb":
        cmd = [
            sys.executable,
            "-c",
            "import asyncio; from passkey_server.db.postgres import init_db; asyncio.run(init_db())",
        ]
    elif command == "test":
        cmd = ["pytest", *args]
    else:
        print(f"Unknown command: {command}")
        sys.exit(1)

    print(f"Executing: {' '.join(cmd)}")
    subprocess.run(cmd, check=True, env=env)

if __name__ == "__main__":
    main()
