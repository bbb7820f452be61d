import json
import os
from functools import wraps
from pathlib import Path

import click
from flask import (
    Flask,
    flash,
    g,
    jsonify,
    redirect,
    render_template,
    request,
    session,
    url_for,
)
from werkzeug.security import check_password_hash, generate_password_hash

from .db import DATABASE_ERRORS, connect_db, parse_database_config
from .db_migrations import apply_migrations, get_db_health
from .diagnostics import (
    cleanup_empty_files,
    clear_transactions,
    dashboard_summary,
    db_status_counts,
    failed_summary,
    file_breakdown,
    list_source_files,
    monthly_spending,
    pending_breakdown,
    raw_totals,
    spending_by_category,
    top_merchants,
    verify_cleanup,
)
from .errors import DashboardError, DatabaseInitError, ErrorKind, require_user
from .ingest import (
    accept_all_transactions,
    approve_transaction,
    bulk_apply_category,
    import_statement,
    sanitize_filename,
)
from .reconcile import find_missing_transactions
from .statements import CONFIDENCE_THRESHOLD


def create_app(test_config=None):
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_mapping(
        SECRET_KEY="dev",
        DATABASE=os.path.join(app.instance_path, "finance_dashboard.sqlite"),
        STATEMENTS_DIR=os.path.join(app.instance_path, "statements"),
        MAX_UPLOAD_BYTES=10 * 1024 * 1024,
        CONFIDENCE_THRESHOLD=CONFIDENCE_THRESHOLD,
    )

    if test_config is not None:
        app.config.update(test_config)

    os.makedirs(app.instance_path, exist_ok=True)
    app.config.setdefault("DB_INIT_ERROR", None)

    def database_config():
        return parse_database_config(app.config["DATABASE"])

    @app.teardown_appcontext
    def close_db(_=None):
        db = g.pop("db", None)
        if db is not None:
            db.close()

    def get_db():
        if "db" not in g:
            try:
                g.db = connect_db(database_config())
            except DATABASE_ERRORS as exc:
                message = f"Unable to open database at {app.config['DATABASE']}: {exc}"
                app.logger.warning(message)
                app.config["DB_INIT_ERROR"] = message
                raise DatabaseInitError(message) from exc
        return g.db

    def init_db():
        try:
            apply_migrations(database_config())
            app.config["DB_INIT_ERROR"] = None
        except (*DATABASE_ERRORS, OSError, RuntimeError) as exc:
            message = f"Failed to initialize database at {app.config['DATABASE']}: {exc}"
            app.logger.warning(message)
            app.config["DB_INIT_ERROR"] = message
            raise DatabaseInitError(message) from exc

    def current_user_id():
        return g.user["id"] if g.get("user") is not None else None

    def user_id_for(username):
        user = get_db().execute("SELECT id FROM users WHERE username = ?", (username,)).fetchone()
        if user is None:
            raise click.ClickException(f"Unknown user: {username}")
        return user["id"]

    def resolve_statement_path(relative_path):
        if not relative_path:
            raise DashboardError.validation("A CSV file or csv_path is required.")
        base = Path(app.config["STATEMENTS_DIR"]).resolve()
        candidate = (base / relative_path).resolve()
        if candidate != base and base not in candidate.parents:
            raise DashboardError.validation("csv_path must point inside the statements directory.")
        return candidate

    def request_data():
        return request.get_json(silent=True) or request.form

    def text_field(data, name):
        value = data.get(name)
        if value is None:
            return ""
        if not isinstance(value, str):
            raise DashboardError.validation(f"{name} must be a string.")
        return value.strip()

    def category_field(data):
        raw_category = data.get("category_id")
        if raw_category in (None, ""):
            return None
        if isinstance(raw_category, bool):
            raise DashboardError.validation(f"Invalid category id: {raw_category}")
        try:
            return int(raw_category)
        except (TypeError, ValueError) as exc:
            raise DashboardError.validation(f"Invalid category id: {raw_category}") from exc

    def flag_field(data, name):
        value = data.get(name)
        if isinstance(value, str):
            return value.strip().lower() in ("1", "true", "yes", "on")
        return bool(value)

    def month_query_arg():
        return request.args.get("month", "").strip() or None

    def read_upload(upload):
        file_bytes = upload.read()
        if len(file_bytes) > app.config["MAX_UPLOAD_BYTES"]:
            raise DashboardError.validation(
                f"File is too large. Maximum size is {app.config['MAX_UPLOAD_BYTES'] // (1024 * 1024)} MB."
            )
        return file_bytes

    def run_reconciliation(user_id, data, upload=None):
        month = text_field(data, "month") or None
        source_filename = text_field(data, "source_filename")
        if upload is not None and upload.filename:
            csv_source = read_upload(upload)
            source_filename = source_filename or sanitize_filename(upload.filename)
        else:
            csv_source = resolve_statement_path(text_field(data, "csv_path"))
            source_filename = source_filename or csv_source.name
        try:
            return find_missing_transactions(get_db(), user_id, csv_source, source_filename, month)
        except FileNotFoundError as exc:
            raise DashboardError.not_found(str(exc)) from exc

    @app.errorhandler(DashboardError)
    def handle_dashboard_error(exc):
        if exc.kind is ErrorKind.STORAGE_ERROR:
            app.logger.warning("Storage error on %s %s: %s", request.method, request.path, exc.message)
        return jsonify(exc.to_dict()), exc.status_code

    @app.cli.command("init-db")
    def init_db_command():
        init_db()
        print("Initialized the database.")

    @app.cli.command("reconcile")
    @click.argument("csv_path", type=click.Path(dir_okay=False))
    @click.argument("source_filename")
    @click.option("--username", required=True, help="Owner of the stored source file.")
    @click.option("--month", default=None, help="Only compare transactions in YYYY-MM.")
    def reconcile_command(csv_path, source_filename, username, month):
        """Report CSV rows missing from the database and stored rows absent from the CSV."""
        try:
            result = find_missing_transactions(get_db(), user_id_for(username), csv_path, source_filename, month)
        except FileNotFoundError as exc:
            raise click.ClickException(str(exc)) from exc
        except DashboardError as exc:
            app.logger.warning("Reconciliation failed for %s: %s", source_filename, exc.message)
            raise click.ClickException(exc.message) from exc
        click.echo(json.dumps(result, indent=2, default=str))

    @app.cli.command("cleanup-empty-files")
    @click.option("--username", required=True, help="User whose empty source files are deleted.")
    def cleanup_empty_files_command(username):
        try:
            result = cleanup_empty_files(get_db(), user_id_for(username), recount=True)
        except DashboardError as exc:
            app.logger.warning("Cleanup failed for %s: %s", username, exc.message)
            raise click.ClickException(exc.message) from exc
        click.echo(result["message"])

    @app.get("/health/db")
    def db_health():
        try:
            return jsonify(get_db_health(database_config()))
        except DATABASE_ERRORS as exc:
            return jsonify({
                "ok": False,
                "schema_version": 0,
                "missing_tables": [],
                "missing_columns": {},
                "missing_indexes": [],
                "error": str(exc),
            }), 500

    def login_required(view):
        @wraps(view)
        def wrapped_view(**kwargs):
            if g.user is None:
                return redirect(url_for("login"))
            return view(**kwargs)

        return wrapped_view

    def render_db_init_error_response():
        message = app.config.get("DB_INIT_ERROR") or "Database initialization failed."
        return f"<h1>Database initialization failed</h1><p>{message}</p>", 500

    @app.before_request
    def load_logged_in_user():
        if app.config.get("DB_INIT_ERROR"):
            return render_db_init_error_response()

        user_id = session.get("user_id")
        if user_id is None:
            g.user = None
        else:
            g.user = get_db().execute("SELECT id, username FROM users WHERE id = ?", (user_id,)).fetchone()

    @app.route("/")
    def index():
        if g.user:
            return redirect(url_for("dashboard"))
        return redirect(url_for("login"))

    @app.route("/register", methods=("GET", "POST"))
    def register():
        if request.method == "POST":
            username = request.form["username"].strip()
            password = request.form["password"]
            db = get_db()
            error = None
            if not username:
                error = "Username is required."
            elif not password:
                error = "Password is required."
            elif db.execute("SELECT 1 FROM users WHERE username = ?", (username,)).fetchone() is not None:
                error = "User already exists."

            if error is None:
                db.execute(
                    "INSERT INTO users (username, password_hash) VALUES (?, ?)",
                    (username, generate_password_hash(password)),
                )
                db.commit()
                flash("Registration successful. Please login.")
                return redirect(url_for("login"))

            flash(error)
        return render_template("register.html")

    @app.route("/login", methods=("GET", "POST"))
    def login():
        if request.method == "POST":
            username = request.form["username"].strip()
            password = request.form["password"]
            db = get_db()
            user = db.execute("SELECT * FROM users WHERE username = ?", (username,)).fetchone()
            error = None

            if user is None or not check_password_hash(user["password_hash"], password):
                error = "Incorrect username or password."

            if error is None:
                session.clear()
                session["user_id"] = user["id"]
                return redirect(url_for("dashboard"))

            flash(error)

        return render_template("login.html")

    @app.route("/logout")
    def logout():
        session.clear()
        return redirect(url_for("login"))

    @app.route("/dashboard")
    @login_required
    def dashboard():
        db = get_db()
        user_id = current_user_id()
        return render_template(
            "dashboard.html",
            summary=dashboard_summary(db, user_id),
            by_category=spending_by_category(db, user_id),
        )

    @app.route("/diagnostics")
    @login_required
    def diagnostics():
        db = get_db()
        user_id = current_user_id()
        return render_template(
            "diagnostics.html",
            status=db_status_counts(db, user_id),
            breakdown=file_breakdown(db, user_id),
            failed=failed_summary(db, user_id),
        )

    @app.route("/reconcile", methods=("GET", "POST"))
    @login_required
    def reconcile_page():
        result = None
        if request.method == "POST":
            try:
                result = run_reconciliation(current_user_id(), request.form, request.files.get("file"))
            except DashboardError as exc:
                flash(exc.message)
        return render_template("reconcile.html", result=result)

    @app.get("/api/check-db-status")
    def check_db_status():
        return jsonify(db_status_counts(get_db(), current_user_id()))

    @app.get("/api/check-files")
    def check_files():
        return jsonify(file_breakdown(get_db()))

    @app.get("/api/db-status")
    def db_status():
        user_id = require_user(current_user_id())
        return jsonify(file_breakdown(get_db(), user_id))

    @app.get("/api/source-files")
    def source_files():
        return jsonify(list_source_files(get_db(), current_user_id()))

    @app.get("/api/verify-cleanup")
    def verify_cleanup_status():
        return jsonify(verify_cleanup(get_db(), current_user_id()))

    @app.post("/api/cleanup-now")
    def cleanup_now():
        result = cleanup_empty_files(get_db(), current_user_id())
        app.logger.info("Cleanup succeeded for user_id=%s deleted=%s", current_user_id(), result["deleted_count"])
        return jsonify(result)

    @app.get("/api/force-cleanup")
    def force_cleanup():
        result = cleanup_empty_files(get_db(), current_user_id(), recount=True)
        app.logger.info("Forced cleanup for user_id=%s deleted_ids=%s", current_user_id(), result["deleted_ids"])
        return jsonify(result)

    @app.get("/api/raw-totals")
    def raw_totals_report():
        return jsonify(raw_totals(get_db(), current_user_id()))

    @app.get("/api/pending")
    def pending_report():
        return jsonify(pending_breakdown(get_db(), current_user_id()))

    @app.get("/api/failed")
    def failed_report():
        return jsonify(failed_summary(get_db(), current_user_id()))

    @app.delete("/api/transactions")
    def delete_transactions():
        result = clear_transactions(get_db(), current_user_id())
        app.logger.info("Cleared transactions for user_id=%s deleted=%s", current_user_id(), result["deleted_count"])
        return jsonify(result)

    @app.post("/api/transactions/<int:transaction_id>/approve")
    def approve(transaction_id):
        user_id = require_user(current_user_id())
        category_id = category_field(request_data())
        return jsonify(approve_transaction(get_db(), user_id, transaction_id, category_id))

    @app.post("/api/transactions/accept-all")
    def accept_all():
        user_id = require_user(current_user_id())
        result = accept_all_transactions(get_db(), user_id, flag_field(request_data(), "failed_only"))
        app.logger.info("Accepted all pending for user_id=%s accepted=%s", user_id, result["accepted_count"])
        return jsonify(result)

    @app.post("/api/transactions/bulk-category")
    def bulk_category():
        user_id = require_user(current_user_id())
        data = request_data()
        category_id = category_field(data)
        if category_id is None:
            raise DashboardError.validation("category_id is required.")
        return jsonify(bulk_apply_category(get_db(), user_id, text_field(data, "merchant"), category_id))

    @app.get("/api/analytics/categories")
    def analytics_categories():
        return jsonify(spending_by_category(get_db(), current_user_id(), month_query_arg()))

    @app.get("/api/analytics/monthly")
    def analytics_monthly():
        return jsonify(monthly_spending(get_db(), current_user_id()))

    @app.get("/api/analytics/top-merchants")
    def analytics_top_merchants():
        limit = request.args.get("limit", 10, type=int)
        if limit < 1:
            raise DashboardError.validation("limit must be a positive integer.")
        return jsonify(top_merchants(get_db(), current_user_id(), limit, month_query_arg()))

    @app.post("/api/upload")
    def upload():
        user_id = require_user(current_user_id())
        upload_file = request.files.get("file")
        if upload_file is None or not upload_file.filename:
            raise DashboardError.validation("No file uploaded.")
        result = import_statement(
            get_db(),
            user_id,
            upload_file.filename,
            read_upload(upload_file),
            app.config["CONFIDENCE_THRESHOLD"],
        )
        return jsonify(result)

    @app.post("/api/reconcile")
    def reconcile_api():
        user_id = require_user(current_user_id())
        return jsonify(run_reconciliation(user_id, request_data(), request.files.get("file")))

    with app.app_context():
        try:
            init_db()
        except DatabaseInitError as exc:
            app.logger.warning("Starting without a usable database: %s", exc)

    app.get_db = get_db
    app.init_db = init_db
    return app
