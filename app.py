from __future__ import annotations

import csv
import io
import logging
import sqlite3
import threading
from datetime import date, datetime, timedelta
from pathlib import Path
from typing import Dict, List, Mapping, Optional

from flask import (
    Flask,
    Response,
    abort,
    current_app,
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

from advisory import AnomalyChecker
from entries import parse_date
from persistence import SnapshotCache, SqliteEntryRepository
from summary import WeekWindow, calculate_week_bounds, summarize
from timesheet import TimesheetSession, TimesheetUnavailable
from validation import DatePolicy, ValidationError, ValidationPolicy, format_hours

BASE_DIR = Path(__file__).resolve().parent
DATABASE_PATH = BASE_DIR / "timesheet.db"

DEFAULT_PROJECTS = ["Project A", "Project B", "Project C"]
DEFAULT_DOCUMENTS = ["Document 1", "Document 2", "Document 3"]

logger = logging.getLogger(__name__)


def hours_label(value: float) -> str:
    return format_hours(round(float(value), 2))


def create_app(test_config: Optional[Mapping[str, object]] = None) -> Flask:
    app = Flask(__name__)
    app.config.update(
        SECRET_KEY="change-me",
        DATABASE=str(DATABASE_PATH),
        SNAPSHOT_PATH=None,
        DAILY_HOUR_CAP=8.0,
        REQUIRE_DOCUMENT=False,
        ALLOW_WEEKENDS=True,
        ALLOW_FUTURE_DATES=True,
        CURRENT_WEEK_ONLY=False,
        WEEK_WINDOW=WeekWindow.TO_DATE.value,
        GROUP_BY_DOCUMENT=True,
        PROJECTS=DEFAULT_PROJECTS,
        DOCUMENTS=DEFAULT_DOCUMENTS,
        ANOMALY_CHECK_URL=None,
        ANOMALY_CHECK_MODEL="gpt-4o-mini",
        ANOMALY_CHECK_API_KEY=None,
        ANOMALY_CHECK_TIMEOUT=10.0,
    )
    if test_config is None:
        app.config.from_prefixed_env("TIMESHEET")
    else:
        app.config.update(test_config)

    app.jinja_env.filters["hours_label"] = hours_label
    app.extensions["timesheet_sessions"] = {}
    app.extensions["timesheet_sessions_lock"] = threading.Lock()
    snapshot_path = app.config["SNAPSHOT_PATH"]
    app.extensions["timesheet_snapshot"] = SnapshotCache(snapshot_path) if snapshot_path else None

    Path(app.config["DATABASE"]).parent.mkdir(parents=True, exist_ok=True)

    @app.before_request
    def load_logged_in_user() -> None:
        g.db = get_db()
        user_id = session.get("user_id")
        if user_id is None:
            g.user = None
        else:
            g.user = get_user_by_id(user_id)

    @app.teardown_appcontext
    def close_db(exception: Optional[BaseException]) -> None:  # pragma: no cover - teardown
        db = g.pop("db", None)
        if db is not None:
            db.close()

    register_routes(app)
    with app.app_context():
        init_db()
    return app


def get_db() -> sqlite3.Connection:
    if "db" not in g:
        conn = sqlite3.connect(current_app.config["DATABASE"])
        conn.row_factory = sqlite3.Row
        g.db = conn
    return g.db


def init_db() -> None:
    conn = sqlite3.connect(current_app.config["DATABASE"])
    try:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS users (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                email TEXT UNIQUE NOT NULL,
                name TEXT NOT NULL,
                password_hash TEXT NOT NULL,
                created_at TEXT NOT NULL
            );
            """
        )
        conn.commit()
    finally:
        conn.close()
    SqliteEntryRepository(current_app.config["DATABASE"]).init_schema()


def get_user_by_id(user_id: int) -> Optional[sqlite3.Row]:
    return g.db.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()


def user_exists(email: str) -> bool:
    row = g.db.execute("SELECT 1 FROM users WHERE email = ?", (email,)).fetchone()
    return row is not None


def validation_policy(config: Mapping[str, object]) -> ValidationPolicy:
    return ValidationPolicy(
        daily_cap=float(config["DAILY_HOUR_CAP"]),  # type: ignore[arg-type]
        require_document=bool(config["REQUIRE_DOCUMENT"]),
        dates=DatePolicy(
            allow_weekends=bool(config["ALLOW_WEEKENDS"]),
            allow_future=bool(config["ALLOW_FUTURE_DATES"]),
            current_week_only=bool(config["CURRENT_WEEK_ONLY"]),
        ),
    )


def build_timesheet(user: sqlite3.Row) -> TimesheetSession:
    config = current_app.config
    timesheet = TimesheetSession(
        owner_id=user["id"],
        user_name=user["name"],
        policy=validation_policy(config),
        repository=SqliteEntryRepository(config["DATABASE"]),
        cache=current_app.extensions["timesheet_snapshot"],
        checker=AnomalyChecker(
            endpoint=config["ANOMALY_CHECK_URL"],
            model=config["ANOMALY_CHECK_MODEL"],
            api_key=config["ANOMALY_CHECK_API_KEY"],
            timeout=float(config["ANOMALY_CHECK_TIMEOUT"]),
        ),
        week_window=WeekWindow(config["WEEK_WINDOW"]),
        by_document=bool(config["GROUP_BY_DOCUMENT"]),
    )
    for warning in timesheet.load():
        flash(warning, "warning")
    return timesheet


def get_timesheet() -> TimesheetSession:
    sessions: Dict[int, TimesheetSession] = current_app.extensions["timesheet_sessions"]
    with current_app.extensions["timesheet_sessions_lock"]:
        timesheet = sessions.get(g.user["id"])
        if timesheet is None:
            timesheet = build_timesheet(g.user)
            # A session that failed to load is rebuilt on the next request.
            if not timesheet.stale:
                sessions[g.user["id"]] = timesheet
    return timesheet


def parse_anchor(value: Optional[str]) -> date:
    try:
        return datetime.strptime(value, "%Y-%m-%d").date() if value else date.today()
    except ValueError:
        return date.today()


def parse_day_or_404(value: str) -> date:
    try:
        return parse_date(value)
    except ValueError:
        abort(404)


def _dashboard_redirect_target(anchor_date: Optional[str]) -> str:
    if anchor_date:
        try:
            datetime.strptime(anchor_date, "%Y-%m-%d")
            return url_for("dashboard", date=anchor_date)
        except ValueError:
            pass
    return url_for("dashboard")


def error_code(exc: ValidationError) -> str:
    # Edit-day rejections wrap the error of the offending row.
    return type(getattr(exc, "error", exc)).__name__


def form_rows(form: Mapping[str, object]) -> List[Dict[str, str]]:
    projects = form.getlist("project")  # type: ignore[attr-defined]
    documents = form.getlist("document")  # type: ignore[attr-defined]
    hours = form.getlist("hours")  # type: ignore[attr-defined]
    descriptions = form.getlist("description")  # type: ignore[attr-defined]
    rows = []
    for index in range(max(len(projects), len(hours))):
        row = {
            "project": projects[index] if index < len(projects) else "",
            "document": documents[index] if index < len(documents) else "",
            "hours": hours[index] if index < len(hours) else "",
            "description": descriptions[index] if index < len(descriptions) else "",
        }
        if not row["project"].strip() and not row["hours"].strip():
            continue
        rows.append(row)
    return rows


def register_routes(app: Flask) -> None:
    @app.route("/")
    def index():
        if g.user:
            return redirect(url_for("dashboard"))
        return redirect(url_for("login"))

    @app.route("/register", methods=["GET", "POST"])
    def register():
        if request.method == "POST":
            email = request.form.get("email", "").strip().lower()
            name = request.form.get("name", "").strip()
            password = request.form.get("password", "")

            error = None
            if not email:
                error = "Email is required."
            elif not name:
                error = "Name is required."
            elif not password:
                error = "Password is required."
            elif user_exists(email):
                error = "Email already registered."

            if error:
                flash(error, "error")
            else:
                now = datetime.now().isoformat(timespec="seconds")
                g.db.execute(
                    "INSERT INTO users (email, name, password_hash, created_at) VALUES (?, ?, ?, ?)",
                    (email, name, generate_password_hash(password), now),
                )
                g.db.commit()
                flash("Registration successful. Please log in.", "success")
                return redirect(url_for("login"))

        return render_template("register.html")

    @app.route("/login", methods=["GET", "POST"])
    def login():
        if request.method == "POST":
            email = request.form.get("email", "").strip().lower()
            password = request.form.get("password", "")

            user = g.db.execute("SELECT * FROM users WHERE email = ?", (email,)).fetchone()
            if user is None or not check_password_hash(user["password_hash"], password):
                flash("Invalid email or password.", "error")
            else:
                session.clear()
                session["user_id"] = user["id"]
                return redirect(url_for("dashboard"))

        return render_template("login.html")

    @app.route("/logout")
    def logout():
        session.clear()
        return redirect(url_for("login"))

    @app.route("/dashboard")
    def dashboard():
        if g.user is None:
            return redirect(url_for("login"))

        anchor_date = parse_anchor(request.args.get("date"))
        timesheet = get_timesheet()
        summaries = timesheet.set_reference_date(anchor_date)
        week_start, week_end = calculate_week_bounds(anchor_date, timesheet.week_window)

        return render_template(
            "dashboard.html",
            user=g.user,
            anchor_date=anchor_date,
            prev_day=anchor_date - timedelta(days=1),
            next_day=anchor_date + timedelta(days=1),
            today=date.today(),
            week_start=week_start,
            week_end=week_end,
            day_entries=timesheet.store.for_date(anchor_date),
            summaries=summaries,
            by_document=timesheet.by_document,
            projects=current_app.config["PROJECTS"],
            documents=current_app.config["DOCUMENTS"],
            daily_cap=timesheet.policy.daily_cap,
        )

    @app.route("/entries", methods=["POST"])
    def save_entry():
        if g.user is None:
            return redirect(url_for("login"))

        try:
            outcome = get_timesheet().submit(request.form)
        except ValidationError as exc:
            logger.info("Rejected entry from user %s: %s", g.user["id"], exc.message)
            flash(exc.message, "error")
        except TimesheetUnavailable as exc:
            flash(str(exc), "error")
        else:
            flash("Entry added.", "success")
            for warning in outcome.warnings:
                flash(warning, "warning")
            if outcome.advisory.confirmation_needed:
                reason = outcome.advisory.reason or "These hours look unusual."
                flash(f"Please double-check this entry: {reason}", "warning")
        return redirect(_dashboard_redirect_target(request.form.get("date")))

    @app.route("/days/<day>/edit")
    def edit_day(day: str):
        if g.user is None:
            return redirect(url_for("login"))

        entry_date = parse_day_or_404(day)
        return render_template(
            "edit_day.html",
            user=g.user,
            entry_date=entry_date,
            entries=get_timesheet().store.for_date(entry_date),
            projects=current_app.config["PROJECTS"],
            documents=current_app.config["DOCUMENTS"],
        )

    @app.route("/days/<day>", methods=["POST"])
    def save_day(day: str):
        if g.user is None:
            return redirect(url_for("login"))

        entry_date = parse_day_or_404(day)
        try:
            outcome = get_timesheet().replace_day(entry_date, form_rows(request.form))
        except ValidationError as exc:
            flash(exc.message, "error")
            return redirect(url_for("edit_day", day=entry_date.isoformat()))
        except TimesheetUnavailable as exc:
            flash(str(exc), "error")
            return redirect(url_for("edit_day", day=entry_date.isoformat()))
        flash(f"Saved {len(outcome.entries)} entries for {entry_date.isoformat()}.", "success")
        for warning in outcome.warnings:
            flash(warning, "warning")
        return redirect(url_for("dashboard", date=entry_date.isoformat()))

    @app.route("/entries/reset", methods=["POST"])
    def reset_entries():
        if g.user is None:
            return redirect(url_for("login"))

        try:
            warnings = get_timesheet().reset()
        except TimesheetUnavailable as exc:
            flash(str(exc), "error")
        else:
            flash("All entries removed.", "success")
            for warning in warnings:
                flash(warning, "warning")
        return redirect(_dashboard_redirect_target(request.form.get("anchor_date")))

    @app.route("/entries/export.csv")
    def export_entries():
        if g.user is None:
            return redirect(url_for("login"))

        buffer = io.StringIO()
        writer = csv.writer(buffer)
        writer.writerow(["id", "date", "project", "document", "hours", "description"])
        for entry in get_timesheet().entries():
            writer.writerow(
                [
                    entry.id,
                    entry.date.isoformat(),
                    entry.project,
                    entry.document or "",
                    format_hours(entry.hours),
                    entry.description or "",
                ]
            )
        return Response(
            buffer.getvalue(),
            mimetype="text/csv",
            headers={"Content-Disposition": "attachment; filename=timesheet.csv"},
        )

    @app.route("/api/time_entries", methods=["GET"])
    def api_time_entries():
        if g.user is None:
            return jsonify({"error": "Not authenticated"}), 401

        start = request.args.get("start")
        end = request.args.get("end")
        try:
            start_date = datetime.strptime(start, "%Y-%m-%d").date() if start else None
            end_date = datetime.strptime(end, "%Y-%m-%d").date() if end else start_date
        except ValueError:
            return jsonify({"error": "Invalid date range"}), 400

        entries = [
            entry.to_dict()
            for entry in get_timesheet().entries()
            if (start_date is None or entry.date >= start_date) and (end_date is None or entry.date <= end_date)
        ]
        return jsonify(entries)

    @app.route("/api/time_entries", methods=["POST"])
    def create_time_entry():
        if g.user is None:
            return jsonify({"error": "Not authenticated"}), 401

        data = request.get_json(silent=True) or {}
        if not isinstance(data, dict):
            return jsonify({"error": "Expected a JSON object."}), 400
        try:
            outcome = get_timesheet().submit(data)
        except ValidationError as exc:
            return jsonify({"error": exc.message, "code": error_code(exc)}), 400
        except TimesheetUnavailable as exc:
            return jsonify({"error": str(exc), "code": "TimesheetUnavailable"}), 503
        payload = {
            "entry": outcome.entry.to_dict(),
            "advisory": outcome.advisory.to_dict(),
            "warnings": outcome.warnings,
            "summary": outcome.summaries.to_dict(),
        }
        return jsonify(payload), 201

    @app.route("/api/days/<day>", methods=["PUT"])
    def replace_day_entries(day: str):
        if g.user is None:
            return jsonify({"error": "Not authenticated"}), 401

        entry_date = parse_day_or_404(day)
        data = request.get_json(silent=True) or {}
        rows = data.get("entries") if isinstance(data, dict) else None
        if not isinstance(rows, list) or not all(isinstance(row, dict) for row in rows):
            return jsonify({"error": "Expected a list of entries."}), 400
        try:
            outcome = get_timesheet().replace_day(entry_date, rows)
        except ValidationError as exc:
            return jsonify({"error": exc.message, "code": error_code(exc)}), 400
        except TimesheetUnavailable as exc:
            return jsonify({"error": str(exc), "code": "TimesheetUnavailable"}), 503
        return jsonify(
            {
                "entries": [entry.to_dict() for entry in outcome.entries],
                "warnings": outcome.warnings,
                "summary": outcome.summaries.to_dict(),
            }
        )

    @app.route("/api/summary", methods=["GET"])
    def api_summary():
        if g.user is None:
            return jsonify({"error": "Not authenticated"}), 401

        timesheet = get_timesheet()
        anchor_date = parse_anchor(request.args.get("date"))
        by_document = request.args.get("by_document")
        if by_document is None:
            return jsonify(timesheet.set_reference_date(anchor_date).to_dict())
        view = summarize(
            timesheet.entries(),
            anchor_date,
            by_document=by_document.lower() in ("1", "true", "yes"),
            week_window=timesheet.week_window,
        )
        return jsonify(view.to_dict())


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    application = create_app()
    application.run(debug=True, host="0.0.0.0", port=5001)
