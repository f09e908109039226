# kernel_config.py
from typing import Dict, List, Mapping, Tuple

# options a crash kernel needs to leave a vmcore behind;
CRASH_DUMP_OPTIONS: Dict[str, str] = {
    'CONFIG_KEXEC': 'y',
    'CONFIG_CRASH_DUMP': 'y',
    'CONFIG_PROC_VMCORE': 'y',
    'CONFIG_RELOCATABLE': 'y',
    'CONFIG_DEBUG_INFO': 'y'
}

def _option_line(key: str, value: str) -> str:
    if value == 'n':
        return f'# {key} is not set'
    return f'{key}={value}'

def parse_kernel_config(text: str) -> Dict[str, str]:
    options = dict()
    for line in text.splitlines():
        line = line.strip()
        if line.startswith('# CONFIG_') and line.endswith(' is not set'):
            options[line[2:-len(' is not set')].strip()] = 'n'
            continue
        if line.startswith('#') or '=' not in line:
            continue
        key, value = line.split('=', maxsplit=1)
        options[key.strip()] = value.strip()
    return options

def fix_kernel_config(text: str, required: Mapping[str, str]) -> Tuple[str, List[str]]:
    """Force `required` options into a .config; returns the text and the changes.

    An option set to 'n' is written as `# CONFIG_X is not set`. Options
    missing from the file are appended. The text is returned unchanged when
    every requirement already holds.
    """
    current = parse_kernel_config(text)
    lines = [line.strip() for line in text.splitlines()]
    changes = []
    found = set()

    for i, line in enumerate(lines):
        for key, expected in required.items():
            if not (line.startswith(f'{key}=') or line == f'# {key} is not set'):
                continue
            found.add(key)
            actual = current.get(key, 'n')
            if actual != expected:
                lines[i] = _option_line(key, expected)
                changes.append(f'{key}: {actual} -> {expected}')

    for key, expected in required.items():
        if key not in found:
            lines.append(_option_line(key, expected))
            changes.append(f'{key}: missing -> {expected}')

    if not changes:
        return text, changes
    return '\n'.join(lines) + '\n', changes
