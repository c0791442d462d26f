"""
Flask integration.

Replaces Flask's cookie-based session with sessions kept in the document
store. Each request gets its own :class:`.SessionHandler`: the session is
locked when the request context is pushed and unlocked once the response
has been saved.

.. code-block:: python

   from flask import Flask
   from docsession.interface import DocumentSessions


   def create_web_app() -> Flask:
       app = Flask('someapp')
       app.config['DOCSESSION_URI'] = 'mongodb://localhost:27017'
       app.config['DOCSESSION_DATABASE'] = 'mySessDb'
       DocumentSessions(app)
       return app

"""

import secrets
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from flask import Flask, Request, Response, session as current_session
from flask.json.tag import TaggedJSONSerializer
from flask.sessions import SessionInterface, SessionMixin
from pytz import UTC
from werkzeug.datastructures import CallbackDict

from . import logging
from .config import SessionConfig, from_mapping, init_app as config_init_app
from .handler import SessionHandler, create_handler
from .stores import Store, mongo, sql

logger = logging.getLogger(__name__)

PAST = datetime(1981, 11, 19, 8, 52, tzinfo=UTC)


def generate_id() -> str:
    """Get a new random session id."""
    return secrets.token_urlsafe(32)


class DocumentSession(CallbackDict, SessionMixin):
    """Session data for one request, bound to the handler that locked it."""

    def __init__(self, initial: Optional[Dict[str, Any]] = None,
                 session_id: str = '',
                 handler: Optional[SessionHandler] = None,
                 new: bool = False) -> None:
        def on_update(self: 'DocumentSession') -> None:
            self.modified = True
            self.accessed = True

        super(DocumentSession, self).__init__(initial, on_update)
        self.session_id = session_id
        self.handler = handler
        self.new = new
        self.modified = False
        self.rotated = False
        self.destroyed = False

    def regenerate(self, delete_old: bool = False) -> str:
        """
        Move the session to a new id, e.g. after a login.

        The lock moves to the new id when the session is saved. The data
        stored under the old id stays unless ``delete_old`` is set.
        """
        if delete_old and self.handler is not None:
            self.handler.destroy(self.session_id)
        self.session_id = generate_id()
        self.rotated = True
        self.modified = True
        return self.session_id

    def destroy(self) -> None:
        """Discard the session; it is deleted when the response is saved."""
        self.clear()
        self.destroyed = True


class DocumentSessionInterface(SessionInterface):
    """Loads and saves :class:`DocumentSession` through a handler."""

    serializer = TaggedJSONSerializer()
    session_class = DocumentSession

    def __init__(self, store: Store, config: SessionConfig) -> None:
        self.store = store
        self.config = config

    def open_session(self, app: Flask, request: Request) -> DocumentSession:
        """Lock the session named by the request cookie and load it."""
        session_id = request.cookies.get(self.config.name)
        new = not session_id
        if not session_id:
            session_id = generate_id()

        handler = create_handler(self.store, self.config)
        handler.open()
        payload = handler.read(session_id)

        initial: Dict[str, Any] = {}
        if payload:
            try:
                initial = self.serializer.loads(payload.decode('utf-8'))
            except ValueError as e:     # Includes UnicodeDecodeError.
                logger.warning('Discarding unreadable session %s: %s',
                               session_id, e)
        return self.session_class(initial, session_id=session_id,
                                  handler=handler, new=new)

    def save_session(self, app: Flask, session: SessionMixin,
                     response: Response) -> None:
        """Write the session, set its cookie, and release the lock."""
        if not isinstance(session, DocumentSession) \
                or session.handler is None:
            return
        handler = session.handler
        try:
            if session.destroyed:
                handler.destroy(session.session_id)
                response.delete_cookie(self.config.name,
                                       path=self.config.cookie_path,
                                       domain=self.config.cookie_domain)
                return

            payload = self.serializer.dumps(dict(session)).encode('utf-8')
            handler.write(session.session_id, payload)
            if session.new or session.rotated:
                self.set_cookie(response, session.session_id)
            self.set_cache_headers(response)
            response.vary.add('Cookie')
        finally:
            handler.close()

    def set_cookie(self, response: Response, session_id: str) -> None:
        """Send the session id cookie."""
        max_age = self.config.timeout or None
        response.set_cookie(self.config.name, session_id, max_age=max_age,
                            path=self.config.cookie_path,
                            domain=self.config.cookie_domain,
                            secure=self.config.cookie_secure,
                            httponly=self.config.cookie_httponly)

    def set_cache_headers(self, response: Response) -> None:
        """Apply the configured cache limiter, unless the view did."""
        limiter = self.config.cache_limiter
        if not limiter or 'Cache-Control' in response.headers:
            return
        max_age = self.config.cache_expiry * 60
        if limiter == 'nocache':
            response.expires = PAST
            response.headers['Cache-Control'] = \
                'no-store, no-cache, must-revalidate'
            response.headers['Pragma'] = 'no-cache'
        elif limiter == 'public':
            response.expires = datetime.now(UTC) + timedelta(seconds=max_age)
            response.headers['Cache-Control'] = f'public, max-age={max_age}'
        elif limiter == 'private':
            response.expires = PAST
            response.headers['Cache-Control'] = f'private, max-age={max_age}'
        else:
            response.headers['Cache-Control'] = f'private, max-age={max_age}'


def connect(app: Flask) -> Store:
    """Open the store named by ``DOCSESSION_URI`` in the app config."""
    uri = app.config.get('DOCSESSION_URI', 'sqlite://')
    if uri.startswith('mongodb'):
        database = app.config.get('DOCSESSION_DATABASE', 'sessions')
        return mongo.connect(uri, database)
    return sql.connect(uri)


class DocumentSessions(object):
    """
    Installs document-store sessions on a Flask app.

    The store is opened once, when the extension is installed, and shared
    by every request.
    """

    def __init__(self, app: Optional[Flask] = None,
                 store: Optional[Store] = None) -> None:
        """
        Initialize ``app`` with the session interface.

        Parameters
        ----------
        app : :class:`Flask`
        store : :class:`.stores.Store`
            Defaults to the store named by ``DOCSESSION_URI``.

        """
        self.store = store
        if app is not None:
            self.init_app(app, store)

    def init_app(self, app: Flask, store: Optional[Store] = None) -> None:
        """Attach the session interface to ``app``."""
        config_init_app(app)
        store = store or self.store or connect(app)
        config = from_mapping(app.config)
        self.store = store
        self.config = config
        app.session_interface = DocumentSessionInterface(store, config)
        app.extensions['docsession'] = self

        @app.teardown_request
        def release_session_lock(exception: Optional[BaseException]) -> None:
            # save_session is skipped if the request failed before a
            # response was made.
            session = current_session._get_current_object()
            if isinstance(session, DocumentSession) \
                    and session.handler is not None \
                    and session.handler.locks.acquired:
                session.handler.close()

        @app.cli.command('build-session-indexes')
        def build_indexes() -> None:
            """Create the indexes used by the session store."""
            create_handler(store, config).build_indexes()
