import asyncio
import inspect
import os
import sys
import tempfile
from datetime import datetime
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="siteguard_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("APP_KEY", "test-app-key-for-automation-only-do-not-use-in-production")
os.environ.setdefault("SESSION_COOKIE_SECURE", "false")
# Keep failure counters in-process so tests never share lockouts through a local Redis
os.environ["REDIS_URL"] = ""

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from siteguard.service.pipeline import RequestContext  # noqa: E402
from siteguard.service.runtime import get_runtime, reset_runtime_for_tests  # noqa: E402
from siteguard.storage.models import AccountStatus, Role, utcnow  # noqa: E402

TEST_PASSWORD = "correct-horse-battery"


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")


@pytest.fixture
def runtime():
    return get_runtime()


@pytest.fixture
def make_principal(runtime):
    """Create principals through the auth service so passwords are hashed."""
    counter = {"n": 0}

    def _make(
        email=None,
        *,
        password=TEST_PASSWORD,
        roles=(Role.USER,),
        status=AccountStatus.ACTIVE,
    ):
        counter["n"] += 1
        return runtime.auth.create_principal(
            email or f"member{counter['n']}@example.com",
            password,
            roles=set(roles),
            status=status,
        )

    return _make


@pytest.fixture
def make_context():
    def _make(
        path="/account",
        *,
        method="GET",
        session=None,
        session_cookie=None,
        now: datetime | None = None,
        ip="203.0.113.7",
        user_agent="pytest-agent",
        expects_json=True,
        csrf_header=None,
    ):
        runtime = get_runtime()
        return RequestContext(
            path=path,
            method=method,
            session=session or runtime.sessions.start_guest(ip, user_agent),
            ip=ip,
            user_agent=user_agent,
            expects_json=expects_json,
            session_cookie=session_cookie,
            csrf_header=csrf_header,
            now=now or utcnow(),
        )

    return _make


@pytest.fixture
def send(runtime, make_context):
    """Drive one request through the pipeline the way the HTTP middleware does."""

    async def _send(session_id, path="/account", **kwargs):
        ctx = make_context(path, session_cookie=session_id, **kwargs)
        denial = await runtime.pipeline.run(ctx)
        if denial is not None:
            runtime.pipeline.resolve(ctx, denial)
        await runtime.pipeline.finalize(ctx)
        runtime.sessions.save(ctx.session)
        return ctx, denial

    return _send


@pytest.fixture
def login(runtime, make_context):
    """Log ``principal`` in and persist the signed session; returns the session id."""

    async def _login(principal, *, now=None, remember=False, ip="203.0.113.7", user_agent="pytest-agent"):
        ctx = make_context("/auth/login", method="POST", now=now, ip=ip, user_agent=user_agent)
        denial = await runtime.pipeline.run(ctx)
        assert denial is None
        runtime.auth.complete_login(ctx, principal, remember=remember)
        await runtime.pipeline.finalize(ctx)
        runtime.sessions.save(ctx.session)
        return ctx.session.id

    return _login
