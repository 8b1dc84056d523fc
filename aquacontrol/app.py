"""
Main Application Module for AquaControl

This module contains the Flask application class that wires the member
registry, the usage ledger, the camera scanner and the statistics
together and exposes them as a small JSON web surface for the kiosk
that hands out the water-valve key.
"""

import atexit
import json
import logging
import os
import queue
import uuid
from datetime import datetime, timedelta
from typing import Callable, Optional
from zoneinfo import ZoneInfo

from flask import Flask, Response, jsonify, request, session

from .aggregation import aggregate
from .exceptions import (
    AquaControlException,
    ActorUnavailableException,
    ConfirmationRequiredException,
    DataAccessException,
    DataValidationException,
    EventNotFoundException,
    MemberNotFoundException,
    ScanSessionBusyException,
)
from .export import export_filename, to_delimited_text
from .models import DEFAULT_MEMBERS, FacingMode, Member, Unresolved, period_for
from .repositories import EventStore, RepositoryFactory
from .scanner import CameraBackend, CaptureLibrary, FrameConfig, OpenCVCamera, ScanSessionManager
from .services import EventLedger, IdentityResolver, MemberRegistry, Notifier


logger = logging.getLogger(__name__)

STREAM_KEEPALIVE_SECONDS = 15


class SessionActorProvider:
    """
    Operator identity kept in the Flask session

    With anonymous actors enabled every browser gets a random actor id
    on its first request; otherwise an operator has to announce itself
    through ``POST /session`` before the ledger accepts changes.
    """

    SESSION_KEY = "actor_id"

    def __init__(self, anonymous: bool = True):
        self.anonymous = anonymous

    def current(self) -> Optional[str]:
        return session.get(self.SESSION_KEY)

    def ensure(self) -> Optional[str]:
        actor_id = self.current()
        if actor_id is None and self.anonymous:
            actor_id = f"anon-{uuid.uuid4().hex[:12]}"
            self.set(actor_id)
        return actor_id

    def set(self, actor_id: str) -> None:
        session.permanent = True
        session[self.SESSION_KEY] = actor_id

    def clear(self) -> None:
        session.pop(self.SESSION_KEY, None)

    def require(self) -> str:
        actor_id = self.current()
        if not actor_id:
            raise ActorUnavailableException()
        return actor_id


class AquaControlApp:
    """
    Main Flask application class for AquaControl

    Backend handles (event store, camera) are created once here and only
    reached through the ledger and the scan session manager.
    """

    def __init__(self, config: Optional[dict] = None, store: Optional[EventStore] = None,
                 camera: Optional[CameraBackend] = None,
                 clock: Optional[Callable[[], datetime]] = None):
        """
        Initialize the AquaControl application

        Args:
            config: Optional configuration dictionary
            store: Prebuilt event store (overrides the STORE setting)
            camera: Prebuilt camera backend (overrides the OpenCV camera)
            clock: Timestamp source for the ledger
        """
        self.app = Flask(__name__)
        self.config = self._configure_app(config)
        self._configure_logging(self.config['LOG_LEVEL'])

        self.tz = ZoneInfo(self.config['TIMEZONE'])
        self.registry = self._build_registry()
        self.store = store or RepositoryFactory.create_event_store(
            self.config['STORE'],
            file_path=self.config['STORE_PATH'],
            url=self.config['REDIS_URL'],
            namespace=self.config['REDIS_NAMESPACE'],
        )
        self.ledger = EventLedger(self.store, self.registry, tz=self.tz, clock=clock)
        self.resolver = IdentityResolver(self.registry)
        self.notifier = Notifier(ttl=self.config['NOTIFICATION_TTL'])
        self.actor_provider = SessionActorProvider(self.config['ANONYMOUS_ACTORS'])

        self.capture_library = CaptureLibrary()
        if camera is None:
            camera = OpenCVCamera(self.capture_library, {
                FacingMode(mode): int(index)
                for mode, index in self.config['CAMERA_INDEXES'].items()
            })
        self.scan_manager = ScanSessionManager(
            camera,
            self.resolver,
            library=self.capture_library if isinstance(camera, OpenCVCamera) else None,
            frame_config=FrameConfig(fps=self.config['SCAN_FPS'],
                                     box_size=self.config['SCAN_BOX_SIZE']),
        )
        self._register_routes()
        self._register_error_handlers()

    def _configure_app(self, config: Optional[dict] = None) -> dict:
        """
        Configure Flask application settings

        Args:
            config: Optional configuration dictionary

        Returns:
            The effective configuration
        """
        default_config = {
            'SECRET_KEY': 'aquacontrol-dev',
            'PERMANENT_SESSION_LIFETIME': timedelta(days=30),
            'DEBUG': True,
            'STORE': 'memory',
            'STORE_PATH': 'water_logs.json',
            'REDIS_URL': None,
            'REDIS_NAMESPACE': 'aquacontrol',
            'TIMEZONE': 'America/Lima',
            'MEMBERS': None,
            'MEMBERS_FILE': None,
            'ANONYMOUS_ACTORS': True,
            'CAMERA_INDEXES': {'environment': 1, 'user': 0},
            'SCAN_FPS': 10,
            'SCAN_BOX_SIZE': 250,
            'NOTIFICATION_TTL': 3.0,
            'LOG_LEVEL': 'INFO',
        }

        if config:
            default_config.update(config)

        self.app.config.update(default_config)
        return default_config

    @staticmethod
    def _configure_logging(level: str) -> None:
        logging.basicConfig(
            level=getattr(logging, str(level).upper(), logging.INFO),
            format='%(asctime)s - %(levelname)s - %(name)s - %(message)s',
        )

    def _build_registry(self) -> MemberRegistry:
        """
        Load the member registry

        ``MEMBERS`` (a ``{id: {name, color}}`` mapping) wins over
        ``MEMBERS_FILE``; without either the built-in list is used.
        """
        if self.config['MEMBERS']:
            repository = RepositoryFactory.create_memory_repository(self.config['MEMBERS'])
            return MemberRegistry.from_repository(repository)

        members_file = self.config['MEMBERS_FILE']
        if members_file:
            repository = RepositoryFactory.create_json_repository(members_file)
            if not repository.exists():
                raise DataAccessException("read", f"Members file not found: {members_file}")
            registry = MemberRegistry.from_repository(repository)
            logger.info("Loaded %d members from %s", len(registry), members_file)
            return registry
        return MemberRegistry(DEFAULT_MEMBERS)

    def _register_routes(self) -> None:
        """Register all Flask routes"""
        self.app.before_request(self._ensure_actor)

        self.app.add_url_rule("/", "dashboard", self.dashboard)
        self.app.add_url_rule("/session", "login", self.login, methods=["POST"])
        self.app.add_url_rule("/logout", "logout", self.logout, methods=["POST"])
        self.app.add_url_rule("/members", "members", self.members)
        self.app.add_url_rule("/members/<member_id>/card", "member_card", self.member_card)
        self.app.add_url_rule("/members/<member_id>/handover", "handover",
                              self.handover, methods=["POST"])
        self.app.add_url_rule("/events", "events", self.events)
        self.app.add_url_rule("/events/stream", "events_stream", self.events_stream)
        self.app.add_url_rule("/events/<event_id>/delete", "delete_event",
                              self.delete_event, methods=["POST"])
        self.app.add_url_rule("/export.csv", "export_csv", self.export_csv)
        self.app.add_url_rule("/scan", "scan", self.scan, methods=["POST"])
        self.app.add_url_rule("/scan/session", "scan_session_open",
                              self.open_scan_session, methods=["POST"])
        self.app.add_url_rule("/scan/session", "scan_session_status", self.scan_session_status)
        self.app.add_url_rule("/scan/session", "scan_session_close",
                              self.close_scan_session, methods=["DELETE"])
        self.app.add_url_rule("/notifications", "notifications", self.notifications)

    def _register_error_handlers(self) -> None:
        """Register error handlers for custom exceptions"""

        def error_response(e: AquaControlException, status: int):
            return jsonify({'error': e.error_code, 'message': e.message}), status

        @self.app.errorhandler(MemberNotFoundException)
        def handle_member_not_found(e):
            return error_response(e, 404)

        @self.app.errorhandler(EventNotFoundException)
        def handle_event_not_found(e):
            return error_response(e, 404)

        @self.app.errorhandler(DataValidationException)
        def handle_validation(e):
            return error_response(e, 400)

        @self.app.errorhandler(ConfirmationRequiredException)
        def handle_confirmation_required(e):
            return error_response(e, 400)

        @self.app.errorhandler(ActorUnavailableException)
        def handle_actor_unavailable(e):
            return error_response(e, 403)

        @self.app.errorhandler(ScanSessionBusyException)
        def handle_scan_busy(e):
            return error_response(e, 409)

        @self.app.errorhandler(DataAccessException)
        def handle_data_access(e):
            logger.error("Backing store failure: %s", e)
            self.notifier.show("❌ The ledger could not be reached, try again")
            return error_response(e, 502)

        @self.app.errorhandler(AquaControlException)
        def handle_aquacontrol_exception(e):
            logger.error("Application error: %s", e)
            return error_response(e, 500)

    def _ensure_actor(self) -> None:
        self.actor_provider.ensure()

    def _payload(self) -> dict:
        """
        Request fields from a JSON object body or a form

        Raises:
            DataValidationException: If the JSON body is not an object
        """
        data = request.get_json(silent=True)
        if data is None:
            return request.form.to_dict()
        if not isinstance(data, dict):
            raise DataValidationException('body', 'Expected a JSON object')
        return data

    def dashboard(self):
        """
        Dashboard route - usage statistics

        Returns:
            JSON aggregate of the current ledger snapshot
        """
        stats = aggregate(self.ledger.snapshot(), self.registry)
        label, year = period_for(self.ledger.clock(), self.tz)
        data = stats.to_dict()
        data['current_period'] = {'label': label, 'year': year}
        data['actor_id'] = self.actor_provider.current()
        data['notification'] = self.notifier.current()
        return data

    def login(self):
        """Announce the operator using this device"""
        actor_id = str(self._payload().get('actor_id', '')).strip()
        if not actor_id:
            raise DataValidationException('actor_id', 'Operator ID is required')
        self.actor_provider.set(actor_id)
        return {'actor_id': actor_id}

    def logout(self):
        self.actor_provider.clear()
        return {'actor_id': None}

    def members(self):
        term = request.args.get('q')
        found = self.registry.search(term) if term else list(self.registry)
        return {'members': [m.to_dict() for m in found]}

    def member_card(self, member_id: str):
        size = request.args.get('size', 300, type=int)
        return self.registry.card(member_id, size=size).to_dict()

    def handover(self, member_id: str):
        """
        Manual selection route - record a hand-over without scanning

        Returns:
            The stored usage event
        """
        self.actor_provider.require()
        member = self.registry.get_or_raise(member_id)
        return self._record(member), 201

    def events(self):
        return {'events': [e.to_dict() for e in self.ledger.snapshot()]}

    def events_stream(self):
        """
        Live ledger feed as server-sent events

        One ``snapshot`` event per ledger change. An ``error`` event ends
        the stream; the client must reconnect to resume.
        """
        updates = queue.Queue()

        def on_snapshot(events):
            updates.put(('snapshot', [e.to_dict() for e in events]))

        def on_error(error):
            updates.put(('error', {'message': str(error)}))

        unsubscribe = self.ledger.subscribe(on_snapshot, on_error)

        def generate():
            try:
                while True:
                    try:
                        kind, data = updates.get(timeout=STREAM_KEEPALIVE_SECONDS)
                    except queue.Empty:
                        yield ": keepalive\n\n"
                        continue
                    yield f"event: {kind}\ndata: {json.dumps(data, ensure_ascii=False)}\n\n"
                    if kind == 'error':
                        break
            finally:
                unsubscribe()

        response = Response(generate(), mimetype='text/event-stream',
                            headers={'Cache-Control': 'no-cache'})
        # HEAD requests and early disconnects close the response without
        # ever starting the generator.
        response.call_on_close(unsubscribe)
        return response

    def delete_event(self, event_id: str):
        """
        Delete route - permanently removes a usage event

        The request must carry ``confirm=yes``.
        """
        self.actor_provider.require()
        confirmed = str(self._payload().get('confirm', '')).lower() == 'yes'
        self.ledger.remove(event_id, confirmed=confirmed)
        self.notifier.show("Record deleted")
        return {'deleted': event_id}

    def export_csv(self):
        text = to_delimited_text(self.ledger.snapshot(), self.tz)
        filename = export_filename(self.ledger.clock().astimezone(self.tz).date())
        return Response(
            text,
            mimetype='text/csv',
            headers={'Content-Disposition': f'attachment; filename={filename}'},
        )

    def scan(self):
        """
        Scan route - payload from a keyboard-emulating USB scanner

        Returns:
            The stored usage event, or 404 when the id matches no member
        """
        self.actor_provider.require()
        result = self.resolver.resolve(str(self._payload().get('payload', '')))
        if isinstance(result, Unresolved):
            self.notifier.show(f"Member not found (ID: {result.raw_id})")
            return {'resolved': False, 'raw_id': result.raw_id}, 404
        return self._record(result), 201

    def open_scan_session(self):
        """
        Open the camera scanner

        The session ends by itself after the first recognised card.
        """
        actor_id = self.actor_provider.require()

        def on_match(member: Member) -> bool:
            try:
                self.ledger.append(member.member_id, actor_id)
                self.notifier.show(f"✅ Key handed to {member.display_name}")
            except AquaControlException as e:
                logger.error("Could not record hand-over for %s: %s", member.member_id, e)
                self.notifier.show("❌ Could not record the hand-over")
            return True

        def on_unresolved(unresolved: Unresolved) -> None:
            self.notifier.show(f"Member not found (ID: {unresolved.raw_id})")

        scan_session = self.scan_manager.open(on_match, on_unresolved)
        if scan_session.last_error:
            self.notifier.show(scan_session.last_error)
            return scan_session.to_dict(), 503
        return scan_session.to_dict(), 201

    def scan_session_status(self):
        scan_session = self.scan_manager.current
        if scan_session is None:
            return {'status': 'Idle', 'camera_facing_mode': None, 'last_error': None}
        return scan_session.to_dict()

    def close_scan_session(self):
        self.scan_manager.close()
        return self.scan_session_status()

    def notifications(self):
        return {'notification': self.notifier.current()}

    def _record(self, member: Member) -> dict:
        actor_id = self.actor_provider.require()
        event = self.ledger.append(member.member_id, actor_id)
        self.notifier.show(f"✅ Key handed to {member.display_name}")
        return event.to_dict()

    def run(self, host: str = '127.0.0.1', port: int = 5000, debug: bool = None) -> None:
        """
        Run the Flask application

        Args:
            host: Host address to bind to
            port: Port number to listen on
            debug: Debug mode (overrides config if provided)
        """
        if debug is not None:
            self.app.config['DEBUG'] = debug

        atexit.register(self.scan_manager.close)

        # The reloader would spawn a second process competing for the camera.
        self.app.run(host=host, port=port, debug=self.app.config['DEBUG'],
                     use_reloader=False, threaded=True)


def create_app(config: Optional[dict] = None, **kwargs) -> AquaControlApp:
    """
    Factory function to create and configure the application

    Args:
        config: Optional configuration dictionary
        **kwargs: Prebuilt collaborators passed to AquaControlApp

    Returns:
        Configured AquaControlApp instance
    """
    return AquaControlApp(config, **kwargs)


def create_development_app() -> AquaControlApp:
    """Create application configured for development"""
    dev_config = {
        'DEBUG': True,
        'SECRET_KEY': 'dev-secret-key-change-in-production',
        'STORE': 'json',
    }
    return create_app(dev_config)


def create_production_app() -> AquaControlApp:
    """
    Create application configured for production

    Settings come from the environment.
    """
    env = os.environ
    prod_config = {
        'DEBUG': False,
        'SECRET_KEY': env.get('AQUACONTROL_SECRET_KEY', 'fallback_secret'),
        'STORE': env.get('AQUACONTROL_STORE', 'json'),
        'STORE_PATH': env.get('AQUACONTROL_STORE_PATH', 'water_logs.json'),
        'REDIS_URL': env.get('REDIS_URL'),
        'TIMEZONE': env.get('AQUACONTROL_TIMEZONE', 'America/Lima'),
        'MEMBERS_FILE': env.get('AQUACONTROL_MEMBERS_FILE'),
        'CAMERA_INDEXES': {
            'environment': int(env.get('AQUACONTROL_CAMERA_ENVIRONMENT_INDEX', 1)),
            'user': int(env.get('AQUACONTROL_CAMERA_USER_INDEX', 0)),
        },
        'LOG_LEVEL': env.get('AQUACONTROL_LOG_LEVEL', 'INFO'),
    }
    return create_app(prod_config)


def main() -> None:
    if os.environ.get('AQUACONTROL_ENV') == 'production':
        app = create_production_app()
    else:
        app = create_development_app()
    app.run(host=os.environ.get('AQUACONTROL_HOST', '127.0.0.1'),
            port=int(os.environ.get('AQUACONTROL_PORT', 5000)))


if __name__ == "__main__":
    main()
