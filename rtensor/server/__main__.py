"""
rtensor reference executor CLI.

Usage:
    python -m rtensor.server                 # port from $REMOTE_BACKEND_PORT (default 3000)
    python -m rtensor.server -p 3000 --seed 0
"""

import argparse

from rtensor.config import default_port
from rtensor.server.server import ExecutorServer


def main():
    parser = argparse.ArgumentParser(description='rtensor reference executor')
    parser.add_argument('-p', '--port', type=int, default=None,
                        help='Port to listen on (default: $REMOTE_BACKEND_PORT or 3000)')
    parser.add_argument('-H', '--host', type=str, default='0.0.0.0',
                        help='Host to bind to (default: 0.0.0.0)')
    parser.add_argument('--backend', type=str, default='numpy',
                        help='Compute engine (default: numpy)')
    parser.add_argument('--seed', type=int, default=None,
                        help='Seed for random tensors (default: nondeterministic)')
    parser.add_argument('--session-timeout', type=float, default=300.0,
                        help='Drop sessions silent for this many seconds, 0 to keep them (default: 300)')
    args = parser.parse_args()

    port = args.port if args.port is not None else default_port()
    server = ExecutorServer(f"tcp://{args.host}:{port}", backend=args.backend, seed=args.seed,
                            session_timeout=args.session_timeout or None)

    print(f"Starting rtensor executor on {args.host}:{port}")
    server.bind()
    print(f"rtensor executor listening on {server.endpoint}")
    try:
        server.serve_forever()
    except KeyboardInterrupt:
        print("\nShutting down executor...")
        server.running = False
    print("Executor stopped")


if __name__ == '__main__':
    main()
