"""过期预占回收本地执行脚本"""

import argparse
import logging
from app.db.session import SessionLocal
from app.core.config import settings
from app.core.redis import redis_client
from app.services.display_cache import DisplayCache
from app.services.expiration_reaper import ExpirationReaper

# 配置日志
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

def run_cleanup(batch_size: int = 500, dry_run: bool = False):
    """执行过期回收

    Args:
        batch_size: 每页扫描条数
        dry_run: 是否为试运行模式（只统计，不回收）
    """
    db = SessionLocal()
    try:
        reaper = ExpirationReaper(db, DisplayCache(redis_client))
        if dry_run:
            expired_count = reaper.count_expired()
            logger.info(f"试运行模式：发现 {expired_count} 条过期预占记录待回收")
            return expired_count

        count = reaper.sweep(batch_size)
        logger.info(f"回收完成：成功回收 {count} 条过期预占记录")
        return count

    except Exception as e:
        logger.error(f"回收执行失败: {str(e)}")
        db.rollback()
        raise
    finally:
        db.close()

def main(argv=None):
    """主函数"""
    parser = argparse.ArgumentParser(description='过期预占回收工具')
    parser.add_argument(
        '--batch-size',
        type=int,
        default=settings.CLEANUP_BATCH_SIZE,
        help=f'每页扫描条数 (默认: {settings.CLEANUP_BATCH_SIZE})'
    )
    parser.add_argument(
        '--dry-run',
        action='store_true',
        help='试运行模式，只统计不回收'
    )
    parser.add_argument(
        '--verbose',
        action='store_true',
        help='详细输出模式'
    )

    args = parser.parse_args(argv)

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    try:
        result = run_cleanup(args.batch_size, args.dry_run)
        if args.dry_run:
            print(f"📊 试运行结果：发现 {result} 条过期记录")
        else:
            print(f"✅ 回收完成：处理了 {result} 条记录")
    except Exception as e:
        print(f"❌ 执行失败: {str(e)}")
        return 1

    return 0

if __name__ == "__main__":
    raise SystemExit(main())
