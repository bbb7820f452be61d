import csv
import io
import os
import random
from datetime import date, timedelta

from werkzeug.security import generate_password_hash

from finance_dashboard import create_app
from finance_dashboard.ingest import import_statement


MERCHANTS = [
    "WHOLE FOODS MARKET #123",
    "STARBUCKS STORE 998",
    "UBER *TRIP",
    "NETFLIX.COM",
    "SHELL OIL 5551",
    "CVS/PHARMACY #0042",
    "LOCAL HARDWARE CO",
]


def build_statement(rows=40):
    out = io.StringIO()
    writer = csv.writer(out)
    writer.writerow(["Transaction Date", "Description", "Amount", "Type"])
    start = date.today() - timedelta(days=90)
    for i in range(rows):
        tx_date = (start + timedelta(days=i * 2)).strftime("%m/%d/%Y")
        amount = -round(random.uniform(5, 200), 2)
        writer.writerow([tx_date, random.choice(MERCHANTS), f"{amount:.2f}", "Sale"])
    writer.writerow([start.strftime("%m/%d/%Y"), "Payment Thank You", "500.00", "Payment"])
    return out.getvalue()


def main():
    app = create_app()
    with app.app_context():
        app.init_db()
        db = app.get_db()

        db.execute(
            "INSERT INTO users (username, password_hash) VALUES (?, ?)",
            ("demo", generate_password_hash("demo123")),
        )
        db.commit()
        user_id = db.execute("SELECT id FROM users WHERE username = 'demo'").fetchone()["id"]

        filename = "chase_sample.csv"
        statement = build_statement()
        os.makedirs(app.config["STATEMENTS_DIR"], exist_ok=True)
        with open(os.path.join(app.config["STATEMENTS_DIR"], filename), "w", newline="") as f:
            f.write(statement)

        result = import_statement(db, user_id, filename, statement.encode("utf-8"))

        # Drop one stored row so reconciliation has something to report.
        db.execute(
            "DELETE FROM transactions WHERE id = (SELECT MAX(id) FROM transactions WHERE source_file_id = ?)",
            (result["source_file_id"],),
        )
        db.commit()

    print(
        f"Imported {result['imported']} sample transactions. Login with demo / demo123, "
        f"then reconcile with csv_path={filename}"
    )


if __name__ == "__main__":
    main()
