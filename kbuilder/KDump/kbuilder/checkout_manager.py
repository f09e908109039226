import os, shutil, aiofiles
import asyncio.subprocess as asp
from unidiff import PatchSet
from unidiff.errors import UnidiffParseError

from KDump.kcore import SourceFetchFailed, PatchApplyFailed
from KDump.kcore.utils import Reporter, run_async

CHECKOUT_MARKER = '.kdump-revision'

class CheckoutManager:

    def __init__(self, report: Reporter, checkout_path: str, remote_repo_url: str):
        self.report = report
        self.checkout_path = checkout_path
        self.remote_repo_url = remote_repo_url

    async def _git(self, *args: str, stdin: bytes | None=None) -> tuple[int, str]:
        proc = await asp.create_subprocess_exec(
            'git', *args,
            cwd=self.checkout_path,
            stdin=asp.DEVNULL if stdin is None else asp.PIPE,
            stdout=asp.DEVNULL,
            stderr=asp.PIPE
        )
        _, err = await proc.communicate(stdin)
        return proc.returncode, err.decode('utf-8', errors='replace').strip()

    async def checked_out_revision(self) -> str | None:
        marker = os.path.join(self.checkout_path, '.git', CHECKOUT_MARKER)
        if not await run_async(os.path.exists, marker):
            return None
        async with aiofiles.open(marker) as fp:
            return (await fp.read()).strip()

    async def fetch(self, revision: str):
        if (await self.checked_out_revision()) == revision:
            await self.report(f'Source at {revision} already present')
            return

        # clean up the potential unfinished checkout;
        if await run_async(os.path.exists, self.checkout_path):
            await run_async(shutil.rmtree, self.checkout_path)
        await run_async(os.makedirs, self.checkout_path)

        await self.report(f'Fetching {revision} from {self.remote_repo_url}')
        for args in (
            ('init', '-q'),
            ('remote', 'add', 'origin', self.remote_repo_url),
            ('fetch', '-q', '--depth', '1', 'origin', revision),
            ('checkout', '-q', 'FETCH_HEAD')
        ):
            code, err = await self._git(*args)
            if code != 0:
                raise SourceFetchFailed(f'git {args[0]} failed for \"{revision}\": {err}')

        async with aiofiles.open(os.path.join(self.checkout_path, '.git', CHECKOUT_MARKER), 'w') as fp:
            await fp.write(revision)
        await self.report('Checkout obtained')

    @staticmethod
    def validate_patch(patch: str) -> PatchSet:
        try:
            patch_set = PatchSet(patch)
        except UnidiffParseError as e:
            raise PatchApplyFailed(f'malformed patch: {e}')
        if len(patch_set) == 0:
            raise PatchApplyFailed('patch touches no file')
        return patch_set

    async def apply_patch(self, patch: str) -> bool:
        """Apply `patch` to the checkout; False if it was already applied.

        A patch that neither applies nor reverses cleanly is a conflict.
        """
        patch_set = CheckoutManager.validate_patch(patch)
        body = patch.encode('utf-8')

        code, err = await self._git('apply', '--check', stdin=body)
        if code != 0:
            rev_code, _ = await self._git('apply', '--reverse', '--check', stdin=body)
            if rev_code == 0:
                await self.report('Patch already applied')
                return False
            raise PatchApplyFailed(f'patch does not apply: {err}')

        code, err = await self._git('apply', stdin=body)
        if code != 0:
            raise PatchApplyFailed(f'patch does not apply: {err}')
        await self.report(f'Patch applied to {len(patch_set)} file(s)')
        return True
