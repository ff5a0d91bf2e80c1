"""Local development entry point.

Usage:
    python run.py

Billing jobs run through the Flask CLI instead:
    flask --app run run-billing
    flask --app run billing-worker --interval 60
"""

from dotenv import load_dotenv

load_dotenv()  # Load .env before anything else

from paybridge import create_app

app = create_app()

if __name__ == "__main__":
    app.run(debug=True, host="0.0.0.0", port=5001)
