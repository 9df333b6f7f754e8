# nodelab/services/exceptions.py

# --- NotFound ---
class NotFoundError(Exception):
    """참조한 리소스를 찾을 수 없을 때"""
    pass

class NodeNotFoundError(NotFoundError):
    """노드를 찾을 수 없을 때"""
    pass

class ImageNotFoundError(NotFoundError):
    """이미지를 찾을 수 없을 때"""
    pass

# --- Conflict ---
class ConflictError(Exception):
    """이름/경로 충돌 또는 상태 전제 조건 위반 시"""
    pass

class NodeAlreadyExistsError(ConflictError):
    """노드 이름이 이미 존재할 때"""
    pass

class ImageAlreadyExistsError(ConflictError):
    """이미지 이름이 이미 존재할 때"""
    pass

class ImageInUseError(ConflictError):
    """자식 이미지나 노드가 참조 중인 이미지를 삭제하려고 할 때"""
    pass

class NodeStateConflictError(ConflictError):
    """노드의 현재 상태가 요청한 작업의 전제 조건과 맞지 않을 때"""
    pass

class OverlayCollisionError(ConflictError):
    """오버레이 파일이 대상 경로에 이미 존재할 때"""
    pass

# --- Resource / environment failures ---
class StorageError(Exception):
    """오버레이 파일 생성/삭제 등 파일시스템 작업 실패 시"""
    pass

class PortPoolExhaustedError(Exception):
    """할당 가능한 VNC 포트가 남아있지 않을 때"""
    pass

class VmLaunchError(Exception):
    """하이퍼바이저 프로세스를 시작하지 못했거나 곧바로 종료되었을 때"""
    pass

class GatewayError(Exception):
    """콘솔 게이트웨이(Guacamole) 연결 등록/해제 실패 시"""
    pass

# --- Validation ---
class InvalidPathError(ValueError):
    """허용된 디렉터리 밖을 가리키는 경로일 때"""
    pass
