# nodelab/utils/vm_xml_generator.py
from pathlib import Path
from xml.sax.saxutils import quoteattr, escape

# 패키지 안의 configs 디렉터리에서 도메인 템플릿을 찾습니다.
PACKAGE_ROOT = Path(__file__).resolve().parent.parent
TEMPLATE_PATH = str(PACKAGE_ROOT / 'configs' / 'vm_template.xml')

def get_xml_template():
    """템플릿 파일을 읽어 XML 내용을 반환합니다."""
    try:
        with open(TEMPLATE_PATH, 'r') as f:
            return f.read()
    except FileNotFoundError:
        raise FileNotFoundError(f"VM template file not found at {TEMPLATE_PATH}. Please check 'configs/vm_template.xml'.")

# 템플릿 내용은 한 번만 읽어옵니다.
XML_TEMPLATE = get_xml_template()


def _attr(value):
    # 작은따옴표로 감싼 속성 값 안에 들어갈 문자열 (quoteattr의 바깥 따옴표 제거)
    return quoteattr(str(value), {"'": "&apos;"})[1:-1]


def generate_vm_xml(vm_name, vm_uuid, cpu_count, ram_mb, image_filepath, vnc_port, vnc_listen="0.0.0.0", enable_kvm=True):
    """
    템플릿에 노드 스펙을 채워 넣어 최종 libvirt 도메인 XML을 생성합니다.
    디스크는 인스턴스 오버레이, 콘솔은 지정된 VNC 포트로 고정됩니다.
    """
    # 메모리는 KiB 단위로 변환
    ram_kib = ram_mb * 1024

    xml = XML_TEMPLATE.format(
        domain_type='kvm' if enable_kvm else 'qemu',
        vm_name=escape(vm_name),
        vm_uuid=vm_uuid,
        cpu_count=cpu_count,
        ram_kib=ram_kib,
        image_filepath=_attr(image_filepath),
        vnc_port=int(vnc_port),
        vnc_listen=_attr(vnc_listen),
    )
    return xml
