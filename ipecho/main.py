from ipecho.core.app_factory import create_app
from ipecho.core.config import settings
from ipecho.server import run

app = create_app()


def main() -> None:
    """Run the service on $PORT (default 8080)."""
    run(app, settings.server)


if __name__ == "__main__":
    main()
