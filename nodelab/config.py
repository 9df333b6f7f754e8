"""nodelab 설정. 환경 변수(NODELAB_ 접두사) 또는 .env 파일에서 읽어옵니다."""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """노드 수명주기 관리자 설정."""

    model_config = SettingsConfigDict(env_prefix="NODELAB_", env_file=".env", extra="ignore")

    # Database
    database_url: str = "sqlite:///nodelab.db"

    # Storage
    image_dir: str = "/var/lib/nodelab/images"
    overlay_dir: str = "/var/lib/nodelab/overlays"
    qemu_img_binary: str = "qemu-img"
    backing_format: str = "qcow2"

    # Hypervisor
    libvirt_uri: str = "qemu:///system"
    domain_prefix: str = "nodelab"
    vm_ram_mb: int = 1024
    vm_cpu_count: int = 1
    enable_kvm: bool = True
    start_grace_seconds: float = 2.0
    stop_timeout_seconds: float = 30.0
    stop_poll_seconds: float = 0.5

    # VNC
    vnc_listen: str = "0.0.0.0"
    vnc_host: str = "127.0.0.1"  # address the gateway uses to reach VNC
    vnc_port_min: int = 5900
    vnc_port_max: int = 5999

    # Guacamole
    guac_url: str = "http://localhost:8080/guacamole"
    guac_api_path: str = "api"
    guac_tunnel_path: str = "websocket-tunnel"
    guac_user: str = "guacadmin"
    guac_pass: str = "guacadmin"
    guac_connection_prefix: str = "nodelab"
    guac_data_source: str = "postgresql"
    gateway_timeout_seconds: float = 10.0

    # Background reconciliation
    reconcile_interval_seconds: int = 30

    # API server
    server_host: str = ""
    server_port: int = 8000

    # Logging
    log_level: str = "INFO"
    log_file: str = "logs/nodelab.log"


settings = Settings()
