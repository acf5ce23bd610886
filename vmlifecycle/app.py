# vmlifecycle/app.py
from socketserver import ThreadingMixIn
from urllib.parse import parse_qs
from wsgiref.simple_server import WSGIServer, make_server
import json
import logging
import re
import threading

from vmlifecycle.config import settings
from vmlifecycle.database import ScopedSession
from vmlifecycle.database.db_init import initialize_db
from vmlifecycle.gateways.libvirt_gateway import LibvirtHypervisorGateway
from vmlifecycle.repositories.sqlalchemy import (
    SqlalchemyImageRepository,
    SqlalchemyOrderRepository,
    SqlalchemyVMRepository,
)
from vmlifecycle.schemas import Actor, VmAction
from vmlifecycle.services.compute_service import ComputeService, build_compute_service
from vmlifecycle.services.exceptions import (
    AuthenticationError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    TransitionAbortedError,
    VmErrorStateError,
    VmOperationError,
)
from vmlifecycle.services.image_service import ImageService

logger = logging.getLogger(__name__)

# --------------------------------------------------------------------------
## 요청 처리 유틸리티 함수
# --------------------------------------------------------------------------

def configure_logging(level=None):
    logging.basicConfig(
        level=(level or settings.LOG_LEVEL).upper(),
        format="%(asctime)s %(levelname)s [%(threadName)s] %(name)s: %(message)s",
    )

def get_request_data(environ):
    try:
        content_length = int(environ.get("CONTENT_LENGTH") or 0)
        data = json.loads(environ["wsgi.input"].read(content_length)) if content_length > 0 else {}
    except (ValueError, json.JSONDecodeError):
        raise ValueError("Invalid or missing JSON body.")
    if not isinstance(data, dict):
        raise ValueError("JSON body must be an object.")
    return data

def get_actor(environ):
    """상위 게이트웨이에서 인증을 마친 X-User-Id / X-User-Role 헤더로 요청 주체를 만듭니다."""
    user_id = environ.get('HTTP_X_USER_ID')
    if not user_id:
        raise AuthenticationError("Missing 'X-User-Id' header.")
    try:
        user_id = int(user_id)
    except ValueError:
        raise AuthenticationError("Invalid 'X-User-Id' header.")
    role = environ.get('HTTP_X_USER_ROLE', '').strip().lower()
    return Actor(user_id=user_id, is_admin=(role == 'admin'))

# 하위 클래스가 먼저 오도록 정렬되어 있어야 합니다.
ERROR_MAP = [
    (TransitionAbortedError, "503 Service Unavailable"),
    (VmErrorStateError, "502 Bad Gateway"),
    (AuthenticationError, "401 Unauthorized"),
    (NotFoundError, "404 Not Found"),
    (ForbiddenError, "403 Forbidden"),
    (ConflictError, "409 Conflict"),
    (ValueError, "400 Bad Request"),
]

def handle_exception(e):
    for error_type, status in ERROR_MAP:
        if isinstance(e, error_type):
            break
    else:
        logger.exception("Unhandled error while processing request")
        status = "500 Internal Server Error"

    if isinstance(e, VmOperationError):
        return status, json.dumps(e.to_dict())
    return status, json.dumps({"error": str(e)})

def serialize(vm):
    return vm.model_dump(mode="json")

# --------------------------------------------------------------------------
## WSGI 애플리케이션 (라우팅)
# --------------------------------------------------------------------------

def create_application(compute_service: ComputeService, session_cleanup=None):
    """
    ComputeService를 사용하는 WSGI 애플리케이션을 만듭니다.
    session_cleanup은 요청이 끝날 때마다 호출됩니다. (스레드 로컬 세션 정리)
    """
    routes = [
        ('GET', r'^/v1/vms$', list_vms_handler),
        ('POST', r'^/v1/vms$', provision_vm_handler),
        ('GET', r'^/v1/vms/expired$', list_expired_vms_handler),
        ('GET', r'^/v1/vms/([0-9]+)$', get_vm_handler),
        ('DELETE', r'^/v1/vms/([0-9]+)$', delete_vm_handler),
        ('POST', r'^/v1/vms/([0-9]+)/power/(on|off|restart|suspend)$', power_action_handler),
        ('POST', r'^/v1/vms/([0-9]+)/rebuild$', rebuild_vm_handler),
        ('POST', r'^/v1/vms/([0-9]+)/refresh$', refresh_vm_handler),
        ('POST', r'^/v1/actions/sweep-expired$', sweep_expired_handler),
    ]

    def application(environ, start_response):
        environ['services'] = {'compute': compute_service}
        try:
            path = environ.get("PATH_INFO", "")
            method = environ.get("REQUEST_METHOD", "")

            handler, path_args = None, []
            for route_method, pattern, route_handler in routes:
                if method == route_method and (match := re.match(pattern, path)):
                    handler, path_args = route_handler, match.groups()
                    break

            if handler:
                status, response_body = handler(environ, *path_args)
            else:
                status, response_body = '404 Not Found', json.dumps({'error': 'Not Found'})

        except Exception as e:
            status, response_body = handle_exception(e)
        finally:
            if session_cleanup is not None:
                session_cleanup()

        start_response(status, [("Content-Type", "application/json")])
        return [response_body.encode("utf-8")]

    return application

# --------------------------------------------------------------------------
## 핸들러 함수
# --------------------------------------------------------------------------

def list_vms_handler(environ, *args):
    actor = get_actor(environ)
    vms = environ['services']['compute'].list_vms(actor)
    return '200 OK', json.dumps({'vms': [serialize(vm) for vm in vms]})

def provision_vm_handler(environ, *args):
    get_actor(environ)
    data = get_request_data(environ)
    if not data.get('order_id'):
        raise ValueError("'order_id' is required.")
    vm = environ['services']['compute'].provision(data['order_id'])
    return '201 Created', json.dumps(serialize(vm))

def list_expired_vms_handler(environ, *args):
    actor = get_actor(environ)
    vms = environ['services']['compute'].list_expired(actor)
    return '200 OK', json.dumps({'vms': [serialize(vm) for vm in vms]})

def get_vm_handler(environ, vm_id):
    actor = get_actor(environ)
    vm = environ['services']['compute'].get_vm(int(vm_id), actor)
    return '200 OK', json.dumps(serialize(vm))

def delete_vm_handler(environ, vm_id):
    actor = get_actor(environ)
    query = parse_qs(environ.get('QUERY_STRING', ''))
    purge = query.get('purge', ['false'])[0].lower() in ('1', 'true', 'yes')
    vm = environ['services']['compute'].delete(int(vm_id), actor, purge=purge)
    return '200 OK', json.dumps(serialize(vm))

def power_action_handler(environ, vm_id, action):
    actor = get_actor(environ)
    vm = environ['services']['compute'].transition(int(vm_id), actor, VmAction(action))
    return '200 OK', json.dumps(serialize(vm))

def rebuild_vm_handler(environ, vm_id):
    actor = get_actor(environ)
    data = get_request_data(environ)
    if not data.get('os_type'):
        raise ValueError("'os_type' is required.")
    vm = environ['services']['compute'].rebuild(int(vm_id), actor, data['os_type'])
    return '200 OK', json.dumps(serialize(vm))

def refresh_vm_handler(environ, vm_id):
    actor = get_actor(environ)
    vm = environ['services']['compute'].refresh_ip_addresses(int(vm_id), actor)
    return '200 OK', json.dumps(serialize(vm))

def sweep_expired_handler(environ, *args):
    actor = get_actor(environ)
    if not actor.is_admin:
        raise ForbiddenError("Sweeping expired VMs requires an administrator.")
    suspended = environ['services']['compute'].sweep_expired()
    return '200 OK', json.dumps({'suspended': [serialize(vm) for vm in suspended]})

# --------------------------------------------------------------------------
## 서버 실행
# --------------------------------------------------------------------------

class ThreadingWSGIServer(ThreadingMixIn, WSGIServer):
    daemon_threads = True

def main():
    configure_logging()
    initialize_db()

    image_service = ImageService(SqlalchemyImageRepository(ScopedSession))
    gateway = LibvirtHypervisorGateway(image_service, task_cleanup=ScopedSession.remove)
    compute_service = build_compute_service(
        SqlalchemyVMRepository(ScopedSession),
        SqlalchemyOrderRepository(ScopedSession),
        gateway,
    )
    application = create_application(compute_service, session_cleanup=ScopedSession.remove)

    stop_event = threading.Event()
    sweeper = threading.Thread(
        target=compute_service.expiry_sweeper.run_forever,
        args=(settings.SWEEP_INTERVAL_SECONDS, stop_event, ScopedSession.remove),
        name="expiry-sweeper",
        daemon=True,
    )
    sweeper.start()

    try:
        with make_server("", settings.SERVER_PORT, application, server_class=ThreadingWSGIServer) as httpd:
            logger.info("Serving VM lifecycle orchestrator on port %d...", settings.SERVER_PORT)
            httpd.serve_forever()
    except KeyboardInterrupt:
        logger.info("Shutting down...")
    finally:
        stop_event.set()
        gateway.close()


if __name__ == "__main__":
    main()
