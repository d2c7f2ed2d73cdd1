"""Analytics API endpoints backed by the sprint cache."""

from flask import Blueprint, current_app, jsonify, request

from app import get_services
from services.analytics import DEFAULT_PERIOD, PERIOD_MONTHS
from services.errors import UpstreamFetchError

bp = Blueprint("analytics", __name__, url_prefix="/api/analytics")

MAX_SPRINT_COUNT = 50
UPSTREAM_ERROR_MESSAGE = "Failed to fetch data from upstream service"


def get_sprint_count(default):
    """Get the sprint window size from the ``sprints`` query param.

    Returns:
        int, or None if the value is not a number between 1 and MAX_SPRINT_COUNT
    """
    sprint_count = request.args.get("sprints")
    if not sprint_count:
        return default
    try:
        sprint_count = int(sprint_count)
    except ValueError:
        return None
    if not 1 <= sprint_count <= MAX_SPRINT_COUNT:
        return None
    return sprint_count


def invalid_sprint_count():
    return jsonify({"error": f"sprints must be an integer between 1 and {MAX_SPRINT_COUNT}"}), 400


def run_metric(name, compute):
    """Run a metric computation and map failures to error responses."""
    try:
        return jsonify({"data": compute()})
    except UpstreamFetchError as e:
        current_app.logger.error(f"{name} failed upstream: {e}")
        return jsonify({"error": UPSTREAM_ERROR_MESSAGE}), 502
    except Exception as e:
        current_app.logger.exception(f"{name} failed")
        return jsonify({"error": str(e)}), 500


@bp.route("/velocity/<int:board_id>", methods=["GET"])
def get_velocity(board_id):
    """Get velocity for the most recent closed sprints of a board.

    Query params:
        - sprints: Number of sprints to include (default 10)

    Returns:
        - Per-sprint velocity, commitment and completed points (newest first)
        - Average velocity
        - Trend: increasing, decreasing or stable
    """
    sprint_count = get_sprint_count(10)
    if sprint_count is None:
        return invalid_sprint_count()

    aggregator = get_services(current_app).aggregator
    return run_metric("Velocity", lambda: aggregator.get_velocity(board_id, sprint_count))


@bp.route("/team-performance/<int:board_id>", methods=["GET"])
def get_team_performance(board_id):
    """Get planned vs completed points per sprint.

    Query params:
        - sprints: Number of sprints to include (default 10)
    """
    sprint_count = get_sprint_count(10)
    if sprint_count is None:
        return invalid_sprint_count()

    aggregator = get_services(current_app).aggregator
    return run_metric("Team performance", lambda: aggregator.get_team_performance(board_id, sprint_count))


@bp.route("/issue-types/<int:board_id>", methods=["GET"])
def get_issue_types(board_id):
    """Get issue type distribution across recent sprints.

    Query params:
        - sprints: Number of sprints to include (default 6)
    """
    sprint_count = get_sprint_count(6)
    if sprint_count is None:
        return invalid_sprint_count()

    aggregator = get_services(current_app).aggregator
    return run_metric(
        "Issue type distribution",
        lambda: aggregator.get_issue_type_distribution(board_id, sprint_count)
    )


@bp.route("/commit-trends/<owner>/<repo>", methods=["GET"])
def get_commit_trends(owner, repo):
    """Get monthly commit and pull request counts.

    Query params:
        - period: 1month, 3months, 6months (default) or 1year
    """
    period = request.args.get("period", DEFAULT_PERIOD)
    if period not in PERIOD_MONTHS:
        return jsonify({"error": f"period must be one of: {', '.join(PERIOD_MONTHS)}"}), 400

    aggregator = get_services(current_app).aggregator
    return run_metric("Commit trends", lambda: aggregator.get_commit_trends(owner, repo, period))


@bp.route("/sprints/<int:sprint_id>/issues", methods=["GET"])
def get_sprint_issues(sprint_id):
    """Get a sprint's issues, cached according to the sprint's state."""
    aggregator = get_services(current_app).aggregator
    return run_metric("Sprint issues", lambda: aggregator.get_sprint_issues(sprint_id))
