"""Cache management and Jira webhook endpoints."""

from flask import Blueprint, current_app, jsonify, request

from app import get_services
from services.errors import UpstreamFetchError
from services.ttl_policy import CLOSED, STATE_TTLS, resolve_ttl

bp = Blueprint("cache", __name__, url_prefix="/api/cache")


@bp.route("/stats", methods=["GET"])
def get_stats():
    """Get cache hit/miss statistics and the TTL policy in effect."""
    try:
        info = get_services(current_app).cache.info()
        info["ttls"] = dict(STATE_TTLS)
        return jsonify({"data": info})
    except Exception as e:
        current_app.logger.exception("Failed to collect cache stats")
        return jsonify({"error": str(e)}), 500


@bp.route("/sprints/<int:sprint_id>/ttl", methods=["GET"])
def get_sprint_ttl(sprint_id):
    """Get the state and TTL the cache uses for a sprint."""
    resolver = get_services(current_app).orchestrator.ttl_resolver
    state = resolver.sprint_state(sprint_id)
    return jsonify({"data": {"sprintId": sprint_id, "state": state, "ttl": resolve_ttl(state)}})


@bp.route("/warm-sprint/<int:sprint_id>", methods=["POST"])
def warm_sprint(sprint_id):
    """Warm every cache entry for a closed sprint.

    Request body (optional, falls back to GITHUB_OWNER / GITHUB_REPO):
        {
            "github_owner": "org",
            "github_repo": "repo"
        }
    """
    data = request.get_json(silent=True) or {}
    owner = data.get("github_owner") or current_app.config.get("GITHUB_OWNER")
    repo = data.get("github_repo") or current_app.config.get("GITHUB_REPO")
    if not owner or not repo:
        return jsonify({"error": "github_owner and github_repo are required"}), 400

    orchestrator = get_services(current_app).orchestrator
    try:
        keys = orchestrator.warm_sprint_cache(sprint_id, owner, repo)
        return jsonify({"data": {"sprintId": sprint_id, "keys": keys}})
    except UpstreamFetchError as e:
        current_app.logger.error(f"Warming sprint {sprint_id} failed upstream: {e}")
        return jsonify({"error": "Failed to fetch data from upstream service"}), 502
    except Exception as e:
        return jsonify({"error": str(e)}), 500


@bp.route("/invalidate/sprint/<int:sprint_id>", methods=["POST"])
def invalidate_sprint(sprint_id):
    """Delete every cache entry derived from a sprint.

    Returns the deleted count per pattern; a pattern whose delete failed
    has a null count.
    """
    results = get_services(current_app).orchestrator.invalidate_sprint_cache(sprint_id)
    failed = [pattern for pattern, count in results.items() if count is None]
    return jsonify({"data": {"sprintId": sprint_id, "deleted": results, "failed": failed}})


@bp.route("/webhooks/jira/issue-updated", methods=["POST"])
def jira_issue_updated():
    """Invalidate the sprints touched by an issue change.

    Expects Jira's jira:issue_updated payload: {"issue": {...}, "changelog": {...}}
    """
    data = request.get_json(silent=True) or {}
    issue = data.get("issue") or {}
    if not issue.get("key"):
        return jsonify({"error": "issue.key is required"}), 400

    current_app.logger.info(f"Jira webhook: issue {issue['key']} updated")
    sprint_ids = get_services(current_app).orchestrator.invalidate_issue_cache(
        issue, data.get("changelog")
    )
    return jsonify({"data": {"issue": issue["key"], "invalidatedSprints": sprint_ids}})


@bp.route("/webhooks/jira/sprint-updated", methods=["POST"])
def jira_sprint_updated():
    """Invalidate a changed sprint and re-warm it once it closes.

    Expects Jira's sprint_updated / sprint_closed payload: {"sprint": {...}}
    """
    data = request.get_json(silent=True) or {}
    sprint = data.get("sprint") or {}
    sprint_id = sprint.get("id")
    if sprint_id is None or not str(sprint_id).isdigit():
        return jsonify({"error": "sprint.id must be a numeric sprint ID"}), 400
    sprint_id = int(sprint_id)

    orchestrator = get_services(current_app).orchestrator
    current_app.logger.info(f"Jira webhook: sprint {sprint_id} updated (state: {sprint.get('state')})")

    orchestrator.invalidate_sprint_cache(sprint_id)
    board_id = sprint.get("originBoardId")
    if board_id is not None:
        orchestrator.invalidate_board_sprints(board_id)

    warming = False
    owner = current_app.config.get("GITHUB_OWNER")
    repo = current_app.config.get("GITHUB_REPO")
    if str(sprint.get("state", "")).lower() == CLOSED:
        if owner and repo:
            orchestrator.warm_sprint_cache_in_background(sprint_id, owner, repo)
            warming = True
        else:
            current_app.logger.warning(
                f"Sprint {sprint_id} closed but GITHUB_OWNER/GITHUB_REPO not configured, skipping warm"
            )

    return jsonify({"data": {"sprintId": sprint_id, "invalidated": True, "warming": warming}})
