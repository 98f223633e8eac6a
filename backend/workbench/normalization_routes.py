import json
import logging
import uuid

from flask import Blueprint, Response, current_app, jsonify, request, session, stream_with_context

from .decomposition_service import DecompositionService, JobInProgressError
from .decomposition_state import DecompositionLockedError

logger = logging.getLogger(__name__)

normalization_bp = Blueprint('normalization', __name__)


def get_workspace():
    # workspace id is kept in the session cookie; the registry may have evicted it
    workspace_id = session.get('workspace_id')
    if workspace_id is None:
        workspace_id = session['workspace_id'] = uuid.uuid4().hex
    return current_app.extensions['workspaces'].get(workspace_id)


def get_service():
    return DecompositionService(get_workspace(), current_app.extensions['solver_client'])


def error_response(e):
    """ Maps core exceptions onto HTTP statuses, always as {"error": message}. """
    if isinstance(e, DecompositionLockedError):
        return jsonify({"error": str(e)}), 409
    if isinstance(e, LookupError):
        return jsonify({"error": str(e)}), 404
    if isinstance(e, ValueError):
        return jsonify({"error": str(e)}), 400
    if isinstance(e, JobInProgressError):
        return jsonify({"error": str(e)}), 409
    if isinstance(e, ConnectionError):
        status = getattr(e, 'status', None)
        return jsonify({"error": str(e), "solverStatus": status}), 502
    logger.exception("Unexpected error")
    return jsonify({"error": f"An unexpected error occurred: {e}"}), 500


def json_body():
    if not request.is_json:
        raise ValueError("Request must be JSON")
    payload = request.get_json(silent=True)
    if payload is None:
        raise ValueError("No JSON data received")
    return payload


# --- Relations ---

@normalization_bp.route('/api/relations', methods=['POST'])
def load_relation():
    try:
        payload = json_body()
        rows = payload.get('rows')
        manual_data = payload.get('manualData')
        if rows is None and not manual_data:
            return jsonify({"error": "Missing 'rows' or 'manualData'"}), 400
        group = get_service().load_relation(rows=rows, manual_data=manual_data,
                                            fds=payload.get('fds', ''), name=payload.get('name'))
        return jsonify(group.to_dict()), 201
    except Exception as e:
        return error_response(e)


@normalization_bp.route('/api/relations', methods=['GET'])
def list_relations():
    return jsonify(get_workspace().to_dict()), 200


@normalization_bp.route('/api/relations/<int:group_id>', methods=['GET'])
def get_relation(group_id):
    try:
        return jsonify(get_workspace().get_group(group_id).to_dict()), 200
    except Exception as e:
        return error_response(e)


# --- Tables and columns ---

@normalization_bp.route('/api/relations/<int:group_id>/tables', methods=['POST'])
def add_table(group_id):
    try:
        payload = request.get_json(silent=True) or {}
        table = get_service().add_table(group_id, payload.get('columns'))
        return jsonify(table.to_dict()), 201
    except Exception as e:
        return error_response(e)


@normalization_bp.route('/api/relations/<int:group_id>/tables/<int:table_id>', methods=['DELETE'])
def remove_table(group_id, table_id):
    try:
        get_service().remove_table(group_id, table_id)
        return jsonify({"message": f"Table T{table_id} removed."}), 200
    except Exception as e:
        return error_response(e)


@normalization_bp.route('/api/relations/<int:group_id>/tables/<int:table_id>/columns', methods=['POST'])
def attach_column(group_id, table_id):
    try:
        payload = json_body()
        if 'globalIndex' not in payload:
            return jsonify({"error": "Missing 'globalIndex'"}), 400
        service = get_service()
        added = service.attach_column(group_id, table_id, payload['globalIndex'],
                                      payload.get('position'))
        table = service.workspace.get_group(group_id).state.get_table(table_id)
        return jsonify({"added": added, "table": table.to_dict()}), 200
    except Exception as e:
        return error_response(e)


@normalization_bp.route('/api/relations/<int:group_id>/tables/<int:table_id>/columns/<int:global_index>',
                        methods=['DELETE'])
def detach_column(group_id, table_id, global_index):
    try:
        drop_empty = request.args.get('dropEmpty', '0').lower() in ('1', 'true', 'yes')
        service = get_service()
        dropped = service.detach_column(group_id, table_id, global_index, drop_empty)
        if dropped:
            return jsonify({"tableRemoved": True}), 200
        table = service.workspace.get_group(group_id).state.get_table(table_id)
        return jsonify({"tableRemoved": False, "table": table.to_dict()}), 200
    except Exception as e:
        return error_response(e)


@normalization_bp.route('/api/relations/<int:group_id>/tables/<int:table_id>/columns', methods=['PUT'])
def reorder_columns(group_id, table_id):
    try:
        payload = json_body()
        columns = payload.get('columns')
        if not isinstance(columns, list):
            return jsonify({"error": "'columns' must be a list"}), 400
        service = get_service()
        service.reorder_columns(group_id, table_id, columns)
        table = service.workspace.get_group(group_id).state.get_table(table_id)
        return jsonify(table.to_dict()), 200
    except Exception as e:
        return error_response(e)


# --- Group actions ---

@normalization_bp.route('/api/relations/<int:group_id>/check', methods=['POST'])
def check_decomposition(group_id):
    try:
        service = get_service()
        result = service.check_decomposition(group_id)
        result["group"] = service.workspace.get_group(group_id).to_dict()
        return jsonify(result), 200
    except Exception as e:
        return error_response(e)


@normalization_bp.route('/api/relations/<int:group_id>/change', methods=['POST'])
def change_decomposition(group_id):
    try:
        service = get_service()
        unlocked = service.change_decomposition(group_id)
        return jsonify({"unlocked": unlocked,
                        "attempts": service.workspace.stats.attempts}), 200
    except Exception as e:
        return error_response(e)


def format_sse(event, data):
    return f"event: {event}\ndata: {json.dumps(data)}\n\n"


@normalization_bp.route('/api/relations/<int:group_id>/compute', methods=['POST'])
def compute_ric(group_id):
    try:
        service = get_service()
        group, job = service.start_computation(group_id)
    except Exception as e:
        return error_response(e)

    def generate():
        for event, data in service.stream_computation(group, job):
            yield format_sse(event, data)

    return Response(stream_with_context(generate()), mimetype='text/event-stream',
                    headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"})


@normalization_bp.route('/api/relations/<int:group_id>/undo', methods=['POST'])
def undo(group_id):
    try:
        result = get_service().undo(group_id)
        result["group"] = get_workspace().get_group(group_id).to_dict()
        return jsonify(result), 200
    except Exception as e:
        return error_response(e)


# --- Normalization stages ---

@normalization_bp.route('/api/normalization/continue', methods=['POST'])
def continue_normalization():
    try:
        result = get_service().continue_normalization()
        result.update(get_workspace().to_dict())
        return jsonify(result), 200
    except Exception as e:
        return error_response(e)


@normalization_bp.route('/api/normalization/previous', methods=['POST'])
def previous_stage():
    try:
        get_service().previous_stage()
        return jsonify(get_workspace().to_dict()), 200
    except Exception as e:
        return error_response(e)


@normalization_bp.route('/api/normalization/bcnf-review', methods=['POST'])
def bcnf_review():
    try:
        return jsonify(get_service().bcnf_review()), 200
    except Exception as e:
        return error_response(e)


@normalization_bp.route('/api/normalization/stats', methods=['GET'])
def stats():
    return jsonify(get_workspace().stats.to_dict()), 200
