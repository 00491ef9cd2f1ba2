"""
fringestage_vote/api.py - HTTP Layer

Responsibilities:
- Owns HTTP lifecycle
- Zero business logic
- Parse and validate JSON bodies
- Resolve the caller from the X-Sender header
- Map rejections to status codes

Caller identity is taken from X-Sender as-is. Proving control of that
address (wallet signatures) belongs to the deployment in front of this app.
"""
import logging
from typing import Any, Optional, Type, TypeVar

from flask import Flask, request, jsonify
from phe import paillier
from pydantic import BaseModel, ValidationError
from werkzeug.exceptions import HTTPException

from .config import Settings, get_settings
from .engine import VotingEngine, build_engine
from .errors import EngineRevert, RevertCode, malformed_argument
from .schemas import (
    CreateSessionRequest,
    SubmitVoteRequest,
    AuthorizeRequest,
    StoreResultsRequest,
    RegisterInputRequest,
)

logger = logging.getLogger(__name__)

MAX_PAYLOAD_SIZE = 256 * 1024  # 256KB

STATUS_BY_CODE = {
    RevertCode.SESSION_NOT_FOUND: 404,
    RevertCode.UNKNOWN_HANDLE: 404,
    RevertCode.ONLY_THEATER_COMPANY: 403,
    RevertCode.UNAUTHORIZED_THEATER: 403,
    RevertCode.ACL_DENIED: 403,
    RevertCode.INVALID_INPUT_PROOF: 400,
    RevertCode.MALFORMED_ARGUMENT: 400,
}

Body = TypeVar("Body", bound=BaseModel)


def create_app(engine: VotingEngine) -> Flask:
    """
    Create the Flask application serving `engine`.

    Mutating routes read the caller from the `X-Sender` header. Rejections
    are returned as the rejection's `to_dict()` body with a status derived
    from its code (404 missing, 403 not permitted, 400 malformed, 409 any
    other state conflict).

    Parameters:
        engine (VotingEngine): The engine every route delegates to.

    Returns:
        app (Flask): Configured application.
    """
    app = Flask(__name__)
    app.config['MAX_CONTENT_LENGTH'] = MAX_PAYLOAD_SIZE

    @app.before_request
    def enforce_content_type():
        if request.method == 'POST' and request.get_data():
            if not request.content_type or not request.content_type.startswith('application/json'):
                return jsonify({
                    "error_code": "ContentTypeInvalid",
                    "kind": "ABI",
                    "message": "Content-Type must be application/json",
                    "details": {"received": request.content_type}
                }), 400

    @app.errorhandler(EngineRevert)
    def handle_revert(e: EngineRevert):
        return jsonify(e.revert.to_dict()), STATUS_BY_CODE.get(e.code, 409)

    @app.errorhandler(ValidationError)
    def handle_validation(e: ValidationError):
        return jsonify({
            "error_code": RevertCode.MALFORMED_ARGUMENT.value,
            "kind": "ABI",
            "message": "Request body failed validation",
            "details": {"errors": e.errors(include_url=False, include_context=False)},
        }), 400

    @app.errorhandler(Exception)
    def handle_unexpected(e: Exception):
        if isinstance(e, HTTPException):
            return e
        logger.error("Unexpected API error: %s", e, exc_info=True)
        return jsonify({
            "error_code": "InternalError",
            "kind": "INTERNAL",
            "message": "Internal error",
            "details": {}
        }), 500

    # --- Coprocessor ---

    @app.route('/v1/fhe/public-key', methods=['GET'])
    def public_key():
        return jsonify({"n": str(engine.coprocessor.public_key.n)}), 200

    @app.route('/v1/fhe/inputs', methods=['POST'])
    def register_input():
        body = _parse(RegisterInputRequest)
        coprocessor = engine.coprocessor
        try:
            ciphertext = paillier.EncryptedNumber(coprocessor.public_key, int(body.ciphertext), body.exponent)
        except ValueError:
            raise EngineRevert(malformed_argument("ciphertext", "expected decimal integer"))
        external = coprocessor.register_input(ciphertext, engine.address, _sender())
        return jsonify({"handle": external.handle, "proof": external.proof}), 201

    # --- Sessions ---

    @app.route('/v1/sessions', methods=['GET'])
    def list_sessions():
        sessions = engine.list_sessions()
        return jsonify({
            "total": len(sessions),
            "sessions": [info.to_dict() for info in sessions],
        }), 200

    @app.route('/v1/sessions', methods=['POST'])
    def create_session():
        body = _parse(CreateSessionRequest)
        session_id = engine.create_session(_sender(), body.title, body.venue, body.start_time, body.end_time)
        return jsonify({"session_id": session_id}), 201

    @app.route('/v1/sessions/<int:session_id>', methods=['GET'])
    def session_info(session_id: int):
        return jsonify(engine.get_session_info(session_id).to_dict()), 200

    @app.route('/v1/sessions/<int:session_id>/end', methods=['POST'])
    def end_session(session_id: int):
        engine.end_session(_sender(), session_id)
        return jsonify(engine.get_session_info(session_id).to_dict()), 200

    @app.route('/v1/sessions/<int:session_id>/votes', methods=['POST'])
    def submit_vote(session_id: int):
        body = _parse(SubmitVoteRequest)
        engine.submit_vote(_sender(), session_id, body.to_inputs(), body.comment_hash)
        info = engine.get_session_info(session_id)
        return jsonify({"session_id": session_id, "vote_count": info.vote_count}), 201

    @app.route('/v1/sessions/<int:session_id>/voters/<address>', methods=['GET'])
    def has_voted(session_id: int, address: str):
        return jsonify({"has_voted": engine.has_voted(session_id, address)}), 200

    @app.route('/v1/sessions/<int:session_id>/authorizations', methods=['POST'])
    def authorize(session_id: int):
        body = _parse(AuthorizeRequest)
        engine.authorize_theater(_sender(), session_id, body.address)
        return jsonify({"address": body.address.lower(), "authorized": True}), 201

    @app.route('/v1/sessions/<int:session_id>/authorizations/<address>', methods=['GET'])
    def is_authorized(session_id: int, address: str):
        return jsonify({"authorized": engine.is_authorized(session_id, address)}), 200

    @app.route('/v1/sessions/<int:session_id>/aggregates', methods=['GET'])
    def aggregates(session_id: int):
        return jsonify(engine.get_encrypted_aggregates(session_id).to_dict()), 200

    @app.route('/v1/sessions/<int:session_id>/decryption', methods=['POST'])
    def request_decryption(session_id: int):
        engine.request_decryption(_sender(), session_id)
        return jsonify(engine.get_session_info(session_id).to_dict()), 202

    @app.route('/v1/sessions/<int:session_id>/results', methods=['POST'])
    def store_results(session_id: int):
        body = _parse(StoreResultsRequest)
        engine.store_decrypted_results(
            _sender(), session_id,
            body.total_plot_tension, body.total_performance, body.total_stage_design, body.total_pacing,
        )
        return jsonify(engine.get_decrypted_results(session_id).to_dict()), 201

    @app.route('/v1/sessions/<int:session_id>/results', methods=['GET'])
    def results(session_id: int):
        return jsonify(engine.get_decrypted_results(session_id).to_dict()), 200

    # --- Event log ---

    @app.route('/v1/events', methods=['GET'])
    def events():
        session_id = request.args.get('session_id', type=int)
        return jsonify([event.to_dict() for event in engine.events(session_id)]), 200

    @app.route('/health', methods=['GET'])
    def health():
        return jsonify({"status": "ok"}), 200

    return app


def _sender() -> str:
    sender = request.headers.get('X-Sender')
    if not sender:
        raise EngineRevert(malformed_argument("sender", "X-Sender header is required"))
    return sender


def _parse(model: Type[Body]) -> Body:
    data: Any = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise EngineRevert(malformed_argument("body", "expected JSON object"))
    return model.model_validate(data)


def run_server(settings: Optional[Settings] = None):
    """
    Start the HTTP server with an engine built from `settings`.
    """
    settings = settings or get_settings()
    logging.basicConfig(level=settings.LOG_LEVEL)
    app = create_app(build_engine(settings))
    app.run(host=settings.API_HOST, port=settings.API_PORT, debug=False)


if __name__ == "__main__":
    run_server()
