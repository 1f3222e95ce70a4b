"""
Assistant Workflow Runtime API 主入口
"""
import logging
import uvicorn
from dotenv import load_dotenv

# 加载环境变量
load_dotenv()

from assistant_workflows.config import Settings

settings = Settings.from_env()

# 配置日志
logging.basicConfig(
    level=settings.log_level,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)


if __name__ == "__main__":
    if settings.api_reload:
        # 开发模式
        uvicorn.run(
            "assistant_workflows.api.app:app",
            host=settings.api_host,
            port=settings.api_port,
            reload=True,
            log_level="info"
        )
    else:
        # 生产模式
        uvicorn.run(
            "assistant_workflows.api.app:app",
            host=settings.api_host,
            port=settings.api_port,
            workers=settings.api_workers,
            log_level="info"
        )
