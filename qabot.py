"""
Entry point that re-exports the FastAPI app and helpers from webhook_app,
so deployments can target ``qabot:app`` or ``qabot.lambda_handler``.
"""

from webhook_app import app, lambda_handler, run  # noqa: F401

if __name__ == "__main__":
    run()
