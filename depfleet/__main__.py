from depfleet.core.app import create_app
from depfleet.core.config import load_config
from depfleet.core.log import setup_logging


def main() -> None:
    config = load_config()
    setup_logging(config.log_level, json_output=config.log_json)
    app = create_app(config)
    app.run(host=app.config["HOST"], port=app.config["PORT"], debug=app.config["DEBUG"])


if __name__ == "__main__":
    main()
