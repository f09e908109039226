import asyncio, pytest
from fastapi import HTTPException

from KDump.kcore import (
    TaskRequest, TaskArgument, TaskType, TaskStatus, TaskOutcome, TaskLog,
    SystemLog, ClaimRequest, ClaimStatus, FinishRequest, AbortedCode, utc_now
)

from fakes import open_backend

def _request(task_id=None, task_type=TaskType.GetVmcore, patch=''):
    return TaskRequest(
        taskType=task_type,
        taskId=task_id,
        argument=TaskArgument(revision='deadbeef', compiler='gcc-12', patch=patch)
    )

def _finish(task_id, worker_id, status=TaskStatus.Success, **kwargs):
    return FinishRequest(
        taskId=task_id,
        workerId=worker_id,
        outcome=TaskOutcome(status=status, **kwargs)
    )

def test_new_task(scheduler_config):
    async def main():
        backend = await open_backend(scheduler_config)
        try:
            task = await backend.new_task(_request('abc123'))
            assert task.status == TaskStatus.Pending
            assert task.startedTime is None and task.finishedTime is None
            assert task.workerId == '' and task.result == ''
            assert (await backend.get_task('abc123')) == task

            generated = await backend.new_task(_request())
            assert generated.taskId != 'abc123'

            with pytest.raises(HTTPException) as e:
                await backend.new_task(_request('abc123'))
            assert e.value.status_code == 409

            page = await backend.list_tasks(pageSize=10)
            assert page.total == 2
            assert {t.taskId for t in page.page} == {'abc123', generated.taskId}
            assert await backend.get_task('missing') is None
        finally:
            await backend.stop()
    asyncio.run(main())

def test_claim_and_finish(scheduler_config):
    async def main():
        backend = await open_backend(scheduler_config)
        try:
            await backend.new_task(_request('abc123'))
            receipt = await backend.claim_task(ClaimRequest(taskId='abc123', workerId='w1'))
            assert receipt.status == ClaimStatus.claimed
            assert receipt.task.status == TaskStatus.Running
            assert receipt.task.workerId == 'w1'
            started = receipt.task.startedTime
            assert started is not None

            again = await backend.claim_task(ClaimRequest(taskId='abc123', workerId='w2'))
            assert again.status == ClaimStatus.conflict
            assert again.task.workerId == 'w1'

            # only the owner finishes;
            assert not (await backend.finish_task(_finish('abc123', 'w2'))).accepted

            finish = await backend.finish_task(_finish(
                'abc123', 'w1', result='vmcore extracted',
                artifactPath='/w/abc123/build/vmcore', artifactName='vmcore'
            ))
            assert finish.accepted
            assert finish.task.status == TaskStatus.Success
            assert finish.task.artifactPath == '/w/abc123/build/vmcore'
            assert finish.task.startedTime == started
            assert finish.task.finishedTime is not None

            # terminal is sticky;
            regress = await backend.finish_task(_finish('abc123', 'w1', TaskStatus.Failed, result='late'))
            assert not regress.accepted
            assert regress.task.status == TaskStatus.Success
            assert (await backend.claim_task(ClaimRequest(taskId='abc123', workerId='w1'))).status == ClaimStatus.conflict
        finally:
            await backend.stop()
    asyncio.run(main())

def test_failed_outcome_has_no_artifact(scheduler_config):
    async def main():
        backend = await open_backend(scheduler_config)
        try:
            await backend.new_task(_request('abc123'))
            await backend.claim_task(ClaimRequest(taskId='abc123', workerId='w1'))
            finish = await backend.finish_task(_finish(
                'abc123', 'w1', TaskStatus.Failed, result='MountFailed: bad superblock',
                artifactPath='/should/not/stick'
            ))
            assert finish.task.status == TaskStatus.Failed
            assert finish.task.artifactPath == ''
            assert finish.task.result == 'MountFailed: bad superblock'
        finally:
            await backend.stop()
    asyncio.run(main())

def test_claim_missing_task(scheduler_config):
    async def main():
        backend = await open_backend(scheduler_config)
        try:
            receipt = await backend.claim_task(ClaimRequest(taskId='nope', workerId='w1'))
            assert receipt.status == ClaimStatus.conflict
            assert receipt.task is None
        finally:
            await backend.stop()
    asyncio.run(main())

@pytest.mark.parametrize('claimants', [2, 8, 32])
def test_concurrent_claims_on_one_connection(scheduler_config, claimants):
    async def main():
        backend = await open_backend(scheduler_config)
        try:
            await backend.new_task(_request('abc123'))
            receipts = await asyncio.gather(*(
                backend.claim_task(ClaimRequest(taskId='abc123', workerId=f'w{i}'))
                for i in range(claimants)
            ))
            winners = [r for r in receipts if r.status == ClaimStatus.claimed]
            assert len(winners) == 1
            assert sum(r.status == ClaimStatus.conflict for r in receipts) == claimants - 1
            assert (await backend.get_task('abc123')).workerId == winners[0].task.workerId
        finally:
            await backend.stop()
    asyncio.run(main())

def test_concurrent_claims_across_connections(scheduler_config):
    async def main():
        backends = [await open_backend(scheduler_config) for _ in range(6)]
        try:
            await backends[0].new_task(_request('abc123'))
            receipts = await asyncio.gather(*(
                backend.claim_task(ClaimRequest(taskId='abc123', workerId=f'w{i}'))
                for i, backend in enumerate(backends)
            ))
            assert sum(r.status == ClaimStatus.claimed for r in receipts) == 1
        finally:
            for backend in backends:
                await backend.stop()
    asyncio.run(main())

def test_abort_pending_only(scheduler_config):
    async def main():
        backend = await open_backend(scheduler_config)
        try:
            await backend.new_task(_request('pending1'))
            assert await backend.abort_task('pending1')
            task = await backend.get_task('pending1')
            assert task.status == TaskStatus.Failed
            assert task.result == AbortedCode
            assert task.finishedTime is not None
            assert not await backend.abort_task('pending1')

            await backend.new_task(_request('running1'))
            await backend.claim_task(ClaimRequest(taskId='running1', workerId='w1'))
            assert not await backend.abort_task('running1')
            assert (await backend.get_task('running1')).status == TaskStatus.Running

            failed = await backend.list_tasks(status=TaskStatus.Failed)
            assert [t.taskId for t in failed.page] == ['pending1']
        finally:
            await backend.stop()
    asyncio.run(main())

def test_logs(scheduler_config):
    async def main():
        backend = await open_backend(scheduler_config)
        try:
            for i in range(3):
                await backend.insert_task_log(TaskLog(
                    timeStamp=utc_now(), taskId='abc123', workerId='w1', content=f'step {i}'
                ))
            await backend.insert_task_log(TaskLog(
                timeStamp=utc_now(), taskId='other', workerId='w1', content={'structured': True}
            ))
            await backend.insert_system_log(SystemLog(
                timeStamp=utc_now(), workerType='kbuilder', workerId='w1', content='joined'
            ))

            logs = await backend.get_task_logs('abc123', pageSize=2)
            assert logs.total == 3
            assert [l.content for l in logs.page] == ['step 2', 'step 1']
            assert logs.offsetNextPage == 2
            assert (await backend.get_task_logs('other')).page[0].content == {'structured': True}

            system = await backend.get_system_logs()
            assert system.total == 1
            assert system.page[0].workerType == 'kbuilder'
        finally:
            await backend.stop()
    asyncio.run(main())

def test_persisted_across_restart(scheduler_config):
    async def main():
        backend = await open_backend(scheduler_config)
        await backend.new_task(_request('abc123'))
        await backend.claim_task(ClaimRequest(taskId='abc123', workerId='w1'))
        await backend.stop()

        backend = await open_backend(scheduler_config)
        try:
            # no lease: a running task stays running;
            assert (await backend.get_task('abc123')).status == TaskStatus.Running
        finally:
            await backend.stop()
    asyncio.run(main())
