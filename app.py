"""
Flask Web Application for the Goal Planner form engine

JSON API over per-user form sessions: field updates, validation,
conflict resolution, recommendations, snapshots and safety metrics.
"""

from flask import Flask, current_app, jsonify, request, session
import logging
import os

from goal_planner.commands import (
    CreateManualSnapshot,
    ProcessFieldUpdate,
    ResolveConflict,
    RollbackToLastGoodState,
    RollbackToSnapshot,
    ValidateForm,
)
from goal_planner.contracts import FieldUpdate
from goal_planner.core.disclosure_engine import DisclosureEngine
from goal_planner.core.form_orchestrator import register_validation_tasks
from goal_planner.core.form_session import SessionRegistry
from goal_planner.core.validation_engine import ValidationEngine
from goal_planner.persistence import FormContextStore
from goal_planner.results import IllegalCommand
from goal_planner.utils.helpers import generate_session_id
from goal_planner.utils.task_runner import DEFAULT_TIMEOUT, create_task_runner

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

SESSION_HEADER = 'X-Session-Id'
RESOLUTIONS = {'accept', 'dismiss'}


def load_config():
    """Defaults overridden by GOAL_PLANNER_* environment variables"""
    return {
        'SECRET_KEY': os.environ.get('GOAL_PLANNER_SECRET_KEY', 'goal-planner-dev-secret-key'),
        'RULESET_PATH': os.environ.get('GOAL_PLANNER_RULESET') or None,
        'CONTEXT_DIR': os.environ.get('GOAL_PLANNER_CONTEXT_DIR', 'outputs/form_contexts'),
        'TASK_RUNNER': os.environ.get('GOAL_PLANNER_TASK_RUNNER', 'inline'),
        'TASK_TIMEOUT': float(os.environ.get('GOAL_PLANNER_TASK_TIMEOUT', DEFAULT_TIMEOUT)),
        'MAX_WORKERS': int(os.environ.get('GOAL_PLANNER_MAX_WORKERS', 4)),
        'MAX_SESSIONS': int(os.environ.get('GOAL_PLANNER_MAX_SESSIONS', SessionRegistry.DEFAULT_MAX_SESSIONS)),
        'HF_MODEL': os.environ.get('GOAL_PLANNER_HF_MODEL') or None,
        # Optional pre-built validator (tests, alternative back ends)
        'VALIDATOR': None,
    }


def build_validator(config):
    """Local validation engine, wrapped by the LLM advisor when a model is configured"""
    if config['VALIDATOR'] is not None:
        return config['VALIDATOR']

    engine = ValidationEngine()
    if not config['HF_MODEL']:
        return engine

    # Imported lazily: torch/transformers are an optional extra
    from goal_planner.core.ai_validation_advisor import AIValidationAdvisor
    from goal_planner.utils.hf_client import HuggingFaceClient

    logger.info(f"Initializing HuggingFace model {config['HF_MODEL']} (this can take a while)...")
    return AIValidationAdvisor(HuggingFaceClient(config['HF_MODEL']), engine=engine)


def create_app(overrides=None):
    """
    Application factory.

    Args:
        overrides: Config values applied over environment defaults

    Returns:
        Flask app with a SessionRegistry in app.extensions['goal_planner']
    """
    app = Flask(__name__)
    app.config.update(load_config())
    app.config.update(overrides or {})

    validator = build_validator(app.config)
    runner = register_validation_tasks(
        create_task_runner(
            app.config['TASK_RUNNER'],
            timeout=app.config['TASK_TIMEOUT'],
            max_workers=app.config['MAX_WORKERS'],
        ),
        validator,
    )

    context_dir = app.config['CONTEXT_DIR']
    app.extensions['goal_planner'] = SessionRegistry(
        DisclosureEngine(app.config['RULESET_PATH']),
        validator,
        task_runner=runner,
        context_store=FormContextStore(context_dir) if context_dir else None,
        task_timeout=app.config['TASK_TIMEOUT'],
        max_sessions=app.config['MAX_SESSIONS'],
    )

    register_routes(app)
    logger.info(f"Goal planner app created (runner={app.config['TASK_RUNNER']}, model={app.config['HF_MODEL']})")
    return app


# ========================
# Request helpers
# ========================

def get_session():
    """Authenticated user id from the signed session cookie, or None"""
    return session.get('user_id')


def get_form_session():
    user_id = get_session()

    session_id = request.headers.get(SESSION_HEADER)
    if not session_id:
        session_id = session.get('form_session_id')
        if not session_id:
            session_id = generate_session_id()
            session['form_session_id'] = session_id

    return current_app.extensions['goal_planner'].get(user_id, session_id)


def json_body():
    """Parsed JSON object body, or None if absent/malformed"""
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else None


def bad_request(problems):
    if isinstance(problems, str):
        problems = [line.strip(' -') for line in problems.splitlines() if line.strip(' -')]
    return jsonify({'success': False, 'error': 'Invalid request format', 'issues': problems}), 400


def illegal(result: IllegalCommand):
    status = 404 if result.code == 'not_found' else 409
    return jsonify({'success': False, 'error': result.reason, 'illegal_command': result.to_json()}), status


def server_error(action, e):
    logger.exception(f"Error {action}: {e}")
    return jsonify({'success': False, 'error': str(e)}), 500


def context_response(form_session, context):
    return jsonify({
        'success': True,
        'session_id': form_session.session_id,
        'safety_status': form_session.monitor.status.value,
        'context': context.to_json(),
    })


# ========================
# Routes
# ========================

def register_routes(app):

    @app.before_request
    def require_login():
        if request.path.startswith('/api/') and get_session() is None:
            return jsonify({'success': False, 'error': 'Authentication required'}), 401

    @app.route('/api/ai/process-field', methods=['POST'])
    def process_field():
        """Apply one field edit"""
        data = json_body()
        if data is None:
            return bad_request(['Request body must be a JSON object'])
        try:
            update = FieldUpdate.from_request(data)
        except ValueError as e:
            return bad_request(str(e))

        try:
            form_session = get_form_session()
            result = form_session.handle(ProcessFieldUpdate(update))
            if isinstance(result, IllegalCommand):
                return illegal(result)
            return context_response(form_session, result)
        except Exception as e:
            return server_error('processing field update', e)

    @app.route('/api/ai/validate-form', methods=['POST'])
    def validate_form():
        """Validate the whole form"""
        data = json_body()
        if data is None:
            return bad_request(['Request body must be a JSON object'])

        problems = []
        form_data = data.get('form_data', {})
        if not isinstance(form_data, dict):
            problems.append("'form_data' must be an object")
        specific_fields = data.get('specific_fields')
        if specific_fields is not None and (
            not isinstance(specific_fields, list) or not all(isinstance(f, str) for f in specific_fields)
        ):
            problems.append("'specific_fields' must be a list of strings")
        if problems:
            return bad_request(problems)

        try:
            form_session = get_form_session()
            result = form_session.handle(ValidateForm(
                form_data=form_data,
                specific_fields=tuple(specific_fields) if specific_fields is not None else None,
            ))
            if isinstance(result, IllegalCommand):
                return illegal(result)
            return jsonify(dict(result.to_json(), success=True))
        except Exception as e:
            return server_error('validating form', e)

    @app.route('/api/ai/resolve-conflict', methods=['POST'])
    def resolve_conflict():
        """Accept, dismiss or override a detected conflict"""
        data = json_body()
        if data is None:
            return bad_request(['Request body must be a JSON object'])

        problems = []
        conflict_id = data.get('conflict_id')
        if not isinstance(conflict_id, str) or not conflict_id:
            problems.append("'conflict_id' is required")
        resolution = data.get('resolution')
        if not (resolution in RESOLUTIONS or (
            isinstance(resolution, dict) and isinstance(resolution.get('updates'), dict)
        )):
            problems.append("'resolution' must be 'accept', 'dismiss' or {'updates': {...}}")
        if problems:
            return bad_request(problems)

        try:
            form_session = get_form_session()
            result = form_session.handle(ResolveConflict(conflict_id, resolution))
            if isinstance(result, IllegalCommand):
                return illegal(result)
            return context_response(form_session, result)
        except Exception as e:
            return server_error('resolving conflict', e)

    @app.route('/api/ai/recommendations', methods=['GET'])
    def recommendations():
        """Next fields to show"""
        limit = request.args.get('limit', type=int)
        if limit is not None and limit < 1:
            return bad_request(["'limit' must be a positive integer"])

        try:
            form_session = get_form_session()
            recs = form_session.recommendations(limit)
            if isinstance(recs, IllegalCommand):
                return illegal(recs)
            return jsonify({'success': True, 'recommendations': [r.to_json() for r in recs]})
        except Exception as e:
            return server_error('computing recommendations', e)

    @app.route('/api/safety/snapshots', methods=['POST'])
    def create_snapshot():
        """Create a manual snapshot"""
        data = json_body() or {}
        label = data.get('label')
        if label is not None and (not isinstance(label, str) or not label.strip()):
            return bad_request(["'label' must be a non-empty string"])

        try:
            result = get_form_session().handle(CreateManualSnapshot(label))
            if isinstance(result, IllegalCommand):
                return illegal(result)
            return jsonify({'success': True, 'snapshot_id': result})
        except Exception as e:
            return server_error('creating snapshot', e)

    @app.route('/api/safety/snapshots', methods=['GET'])
    def list_snapshots():
        try:
            return jsonify({'success': True, 'snapshots': get_form_session().get_snapshots()})
        except Exception as e:
            return server_error('listing snapshots', e)

    @app.route('/api/safety/rollback', methods=['POST'])
    def rollback():
        """Roll back to a named snapshot, or to the last good state"""
        data = json_body() or {}
        snapshot_id = data.get('snapshot_id')
        if snapshot_id is not None and not isinstance(snapshot_id, str):
            return bad_request(["'snapshot_id' must be a string"])

        try:
            form_session = get_form_session()
            command = RollbackToSnapshot(snapshot_id) if snapshot_id else RollbackToLastGoodState()
            result = form_session.handle(command)
            if isinstance(result, IllegalCommand):
                return illegal(result)
            return jsonify({
                'success': True,
                'snapshot': result.to_json(),
                'context': form_session.context.to_json(),
            })
        except Exception as e:
            return server_error('rolling back', e)

    @app.route('/api/safety/metrics', methods=['GET'])
    def metrics():
        try:
            form_session = get_form_session()
            monitor = form_session.monitor
            return jsonify({
                'success': True,
                'metrics': form_session.get_safety_metrics().to_json(),
                'safety_status': monitor.status.value,
                'ai_disabled': monitor.ai_disabled,
                'progressive_disabled': monitor.progressive_disabled,
                'emergency_mode': monitor.emergency_mode,
            })
        except Exception as e:
            return server_error('reading safety metrics', e)

    @app.route('/api/safety/events', methods=['GET'])
    def events():
        try:
            return jsonify({'success': True, 'events': get_form_session().monitor.get_events()})
        except Exception as e:
            return server_error('reading safety events', e)

    @app.route('/api/safety/reset', methods=['POST'])
    def reset():
        """Clear snapshots, metrics and safety flags for this session"""
        try:
            form_session = get_form_session()
            form_session.reset()
            return jsonify({'success': True, 'safety_status': form_session.monitor.status.value})
        except Exception as e:
            return server_error('resetting session', e)

    @app.route('/api/session/end', methods=['POST'])
    def end_session():
        """Release the live form session; its saved context stays on disk"""
        session_id = request.headers.get(SESSION_HEADER) or session.pop('form_session_id', None)
        if not session_id:
            return bad_request(["No form session to end"])

        try:
            ended = current_app.extensions['goal_planner'].end(get_session(), session_id)
            return jsonify({'success': True, 'session_id': session_id, 'ended': ended})
        except Exception as e:
            return server_error('ending session', e)


app = create_app()


if __name__ == '__main__':
    logger.info("Starting Goal Planner web server...")
    app.run(debug=True, host='0.0.0.0', port=5000)
