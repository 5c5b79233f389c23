"""Allow ``python -m LabelKit.LabelDownload`` to run the labelfetch CLI."""

from LabelKit.LabelDownload.cli_main import app

if __name__ == "__main__":
    app()
