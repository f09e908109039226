# __main__.py
import os
from .reproduce_task import ReproduceTask
from KDump.kcore import Worker, REPRODUCER_QUEUE

if __name__ == '__main__':
    worker = Worker(
        os.environ['KDUMP_MQ_CONN_URL'],
        REPRODUCER_QUEUE,
        ReproduceTask
    )
    worker.run()
