# __main__.py
import sys, asyncio, argparse

from KDump.kcore import TaskExceptionError, workspace_paths

from .extractor import mount_and_inject, extract_artifacts

async def print_report(message):
    print(message)

async def cmd_mount_and_inject(args):
    paths = workspace_paths(args.workspace_root, args.taskId, args.revision)
    staged = await mount_and_inject(paths, report=print_report)
    print('kernel staged at', staged)

async def cmd_extract_artifacts(args):
    paths = workspace_paths(args.workspace_root, args.taskId, args.revision)
    report = await extract_artifacts(paths, report=print_report)
    print(report.model_dump_json(indent=2))

def main_cli(argv=None):
    ap = argparse.ArgumentParser('python -m KDump.kimage')
    ap.add_argument('--workspace-root', default='workspace')
    sp = ap.add_subparsers(required=True)

    mi = sp.add_parser('mount-and-inject')
    mi.set_defaults(func=cmd_mount_and_inject)

    ea = sp.add_parser('extract-artifacts')
    ea.set_defaults(func=cmd_extract_artifacts)

    for p in (mi, ea):
        p.add_argument('taskId')
        p.add_argument('revision')

    args = ap.parse_args(argv)
    try:
        asyncio.run(args.func(args))
    except TaskExceptionError as e:
        print(e.describe(), file=sys.stderr)
        return 1
    except ValueError as e:
        print(e, file=sys.stderr)
        return 2
    return 0

if __name__ == '__main__':
    sys.exit(main_cli())
