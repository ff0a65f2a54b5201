# hostmgr/app.py
from wsgiref.simple_server import make_server
from urllib.parse import parse_qs
import json
import logging
import re
import sys

from hostmgr.bootstrap import build_service
from hostmgr.config import Settings
from hostmgr.domain import VMConfig, VMSpec, NetworkConfig
from hostmgr.services.exceptions import (
    AdapterError, ConflictError, NotFoundError, ValidationError,
)
from hostmgr.utils.logging import configure_logging

logger = logging.getLogger(__name__)

CONFIG_FIELDS = {"cpu": "cpu", "memoryMB": "memory_mb", "storageGB": "storage_gb", "network": "network"}
NETWORK_FIELDS = {"ip", "subnet", "gateway"}
CREATE_FIELDS = {"name", "clientId", "template", "config", "metadata"}

# --------------------------------------------------------------------------
## 요청 처리 유틸리티 함수
# --------------------------------------------------------------------------

def get_request_data(environ):
    try:
        content_length = int(environ.get("CONTENT_LENGTH") or 0)
        data = json.loads(environ["wsgi.input"].read(content_length)) if content_length > 0 else {}
    except (ValueError, json.JSONDecodeError):
        raise ValidationError("Invalid or missing JSON body.")
    if not isinstance(data, dict):
        raise ValidationError("JSON body must be an object.")
    return data

def get_query(environ):
    return {k: v[-1] for k, v in parse_qs(environ.get("QUERY_STRING", "")).items()}

def get_timeout(environ):
    raw = get_query(environ).get("timeout")
    if raw is None:
        return None
    try:
        timeout = float(raw)
    except ValueError:
        raise ValidationError(f"timeout must be a number, got '{raw}'.")
    if timeout <= 0:
        raise ValidationError("timeout must be positive.")
    return timeout

def parse_int(value, name):
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{name} must be an integer, got '{value}'.")

def parse_network(data):
    if data is None:
        return None
    if not isinstance(data, dict):
        raise ValidationError("config.network must be an object.")
    unknown = set(data) - NETWORK_FIELDS
    if unknown:
        raise ValidationError(f"Unknown network fields: {', '.join(sorted(unknown))}.")
    return NetworkConfig(**data)

def parse_config_fields(data, required):
    if not isinstance(data, dict):
        raise ValidationError("config must be an object.")
    unknown = set(data) - set(CONFIG_FIELDS)
    if unknown:
        raise ValidationError(f"Unknown config fields: {', '.join(sorted(unknown))}.")
    missing = [f for f in ("cpu", "memoryMB", "storageGB") if required and f not in data]
    if missing:
        raise ValidationError(f"Missing config fields: {', '.join(missing)}.")
    values = {CONFIG_FIELDS[k]: v for k, v in data.items() if k != "network"}
    if "network" in data:
        values["network"] = parse_network(data["network"])
    return values

def parse_vm_spec(data):
    unknown = set(data) - CREATE_FIELDS
    if unknown:
        raise ValidationError(f"Unknown fields: {', '.join(sorted(unknown))}.")
    config = parse_config_fields(data.get("config"), required=True)
    return VMSpec(
        name=data.get("name"),
        client_id=data.get("clientId"),
        template=data.get("template"),
        config=VMConfig(**config),
        metadata=data.get("metadata") or {},
    )

def ok(status, data, **extra):
    return status, json.dumps({"success": True, "data": data, **extra})

def handle_exception(e):
    # VmAlreadyExistsError는 ConflictError이면서 ValidationError이므로 Conflict를 먼저 검사합니다.
    if isinstance(e, NotFoundError):
        status = "404 Not Found"
    elif isinstance(e, ConflictError):
        status = "409 Conflict"
    elif isinstance(e, ValidationError):
        status = "400 Bad Request"
    elif isinstance(e, AdapterError):
        status = "504 Gateway Timeout" if e.timed_out else "502 Bad Gateway"
    else:
        logger.exception("Unhandled error while processing request")
        return "500 Internal Server Error", json.dumps({"success": False, "error": "Internal server error", "code": "internal_error"})

    body = {"success": False, "error": str(e), "code": e.code}
    if isinstance(e, AdapterError):
        body["retryable"] = e.retryable
        body["vmId"] = e.vm_id
    return status, json.dumps(body)

# --------------------------------------------------------------------------
## 핸들러 함수
# --------------------------------------------------------------------------

def list_vms_handler(environ, *args):
    query = get_query(environ)
    page = parse_int(query.get("page", 1), "page")
    limit = parse_int(query["limit"], "limit") if "limit" in query else None
    vms, pagination = environ['service'].list_vms(
        status=query.get("status"), client_id=query.get("clientId"), page=page, limit=limit
    )
    return ok('200 OK', [vm.to_dict() for vm in vms], pagination=pagination.to_dict())

def create_vm_handler(environ, *args):
    spec = parse_vm_spec(get_request_data(environ))
    vm = environ['service'].create_vm(spec, timeout=get_timeout(environ))
    return ok('201 Created', vm.to_dict(), message=f"VM {vm.name} created.")

def get_vm_handler(environ, vm_id):
    return ok('200 OK', environ['service'].get_vm(vm_id).to_dict())

def update_vm_handler(environ, vm_id):
    data = get_request_data(environ)
    unknown = set(data) - {"config"}
    if unknown:
        raise ValidationError(f"Only config can be updated; unknown fields: {', '.join(sorted(unknown))}.")
    changes = parse_config_fields(data.get("config"), required=False)
    vm = environ['service'].update_config(vm_id, changes)
    return ok('200 OK', vm.to_dict(), message=f"VM {vm.name} configured.")

def delete_vm_handler(environ, vm_id):
    vm = environ['service'].destroy(vm_id, timeout=get_timeout(environ))
    return ok('200 OK', vm.to_dict(), message=f"VM {vm.name} destroyed.")

def make_action_handler(action):
    def handler(environ, vm_id):
        vm = getattr(environ['service'], action)(vm_id, timeout=get_timeout(environ))
        return ok('200 OK', vm.to_dict(), message=f"VM {vm.name} {action} completed.")
    handler.__name__ = f"{action}_vm_handler"
    return handler

def clone_vm_handler(environ, vm_id):
    data = get_request_data(environ)
    vm = environ['service'].clone(vm_id, data.get("name"), timeout=get_timeout(environ))
    return ok('201 Created', vm.to_dict(), message=f"VM {vm.name} cloned.")

def list_snapshots_handler(environ, vm_id):
    snapshots = environ['service'].list_snapshots(vm_id)
    return ok('200 OK', [s.to_dict() for s in snapshots])

def create_snapshot_handler(environ, vm_id):
    data = get_request_data(environ)
    snapshot = environ['service'].create_snapshot(vm_id, data.get("name"))
    return ok('201 Created', snapshot.to_dict())

def restore_snapshot_handler(environ, vm_id, snapshot_id):
    vm = environ['service'].restore_snapshot(vm_id, snapshot_id)
    return ok('200 OK', vm.to_dict(), message=f"VM {vm.name} restored.")

ID = r'([a-zA-Z0-9_-]+)'

ROUTES = [
    ('GET', r'^/api/vms$', list_vms_handler),
    ('POST', r'^/api/vms$', create_vm_handler),
    ('GET', rf'^/api/vms/{ID}$', get_vm_handler),
    ('PUT', rf'^/api/vms/{ID}$', update_vm_handler),
    ('DELETE', rf'^/api/vms/{ID}$', delete_vm_handler),
    ('POST', rf'^/api/vms/{ID}/start$', make_action_handler("start")),
    ('POST', rf'^/api/vms/{ID}/stop$', make_action_handler("stop")),
    ('POST', rf'^/api/vms/{ID}/suspend$', make_action_handler("suspend")),
    ('POST', rf'^/api/vms/{ID}/resume$', make_action_handler("resume")),
    ('POST', rf'^/api/vms/{ID}/restart$', make_action_handler("restart")),
    ('POST', rf'^/api/vms/{ID}/clone$', clone_vm_handler),
    ('GET', rf'^/api/vms/{ID}/snapshots$', list_snapshots_handler),
    ('POST', rf'^/api/vms/{ID}/snapshots$', create_snapshot_handler),
    ('POST', rf'^/api/vms/{ID}/snapshots/{ID}/restore$', restore_snapshot_handler),
]

# --------------------------------------------------------------------------
## WSGI 애플리케이션
# --------------------------------------------------------------------------

def create_app(service):
    """
    LifecycleService 하나를 공유하는 WSGI 애플리케이션을 만듭니다.
    진행 중인 작업 추적이 프로세스 단위이므로 서비스는 요청마다 새로 만들지 않습니다.
    """
    def application(environ, start_response):
        environ['service'] = service
        path = environ.get("PATH_INFO", "")
        method = environ.get("REQUEST_METHOD", "")

        try:
            handler, path_args = None, []
            for route_method, pattern, route_handler in ROUTES:
                if method == route_method and (match := re.match(pattern, path)):
                    handler, path_args = route_handler, match.groups()
                    break

            if handler:
                status, response_body = handler(environ, *path_args)
            else:
                status, response_body = '404 Not Found', json.dumps({'success': False, 'error': 'Not Found', 'code': 'not_found'})
        except Exception as e:
            status, response_body = handle_exception(e)

        logger.info("%s %s -> %s", method, path, status)
        start_response(status, [("Content-Type", "application/json")])
        return [response_body.encode("utf-8")]

    return application

# --------------------------------------------------------------------------
## 서버 실행
# --------------------------------------------------------------------------

def main():
    settings = Settings.from_env()
    configure_logging(settings.log_level)
    service = build_service(settings)
    try:
        with make_server(settings.host, settings.port, create_app(service)) as httpd:
            logger.info("Serving hostmgr VM API on port %s...", settings.port)
            httpd.serve_forever()
    except KeyboardInterrupt:
        logger.info("Shutting down.")
    except OSError as e:
        print(f"Error starting server: {e}", file=sys.stderr)
        sys.exit(1)
    finally:
        service.shutdown(wait=False)


if __name__ == "__main__":
    main()
