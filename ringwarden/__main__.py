import asyncio
import sys

from ringwarden.balancer import Balancer


def main() -> None:
    env_file = sys.argv[1] if len(sys.argv) > 1 else None
    balancer = Balancer.from_env(env_file=env_file)

    try:
        asyncio.run(balancer.run_forever())

    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
