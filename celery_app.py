"""Celery 配置文件"""

from celery import Celery
from celery.schedules import crontab

from app.core.config import settings

# 创建 Celery 应用实例
app = Celery('inventory_worker', include=['tasks.inventory_tasks'])

# 配置 Redis 作为 broker 和 backend（与展示缓存分库）
app.conf.broker_url = f"redis://{settings.REDIS_HOST}:{settings.REDIS_PORT}/1"
app.conf.result_backend = f"redis://{settings.REDIS_HOST}:{settings.REDIS_PORT}/2"

# 任务序列化配置
app.conf.task_serializer = 'json'
app.conf.result_serializer = 'json'
app.conf.accept_content = ['json']

# 时区配置
app.conf.timezone = 'UTC'
app.conf.enable_utc = True

# 任务路由配置
app.conf.task_routes = {
    'tasks.inventory.*': {'queue': 'inventory'},
}

# Worker 配置
app.conf.worker_prefetch_multiplier = 1
app.conf.task_acks_late = True

# 定时任务：过期回收每分钟一次，去重键每小时清理一次
app.conf.beat_schedule = {
    'reap-expired-reservations': {
        'task': 'tasks.inventory.reap_expired_reservations',
        'schedule': 60.0,
        'kwargs': {'batch_size': settings.CLEANUP_BATCH_SIZE},
    },
    'purge-idempotency-keys': {
        'task': 'tasks.inventory.purge_idempotency_keys',
        'schedule': crontab(minute=0),
    },
}

# 导出应用实例
__all__ = ['app']
