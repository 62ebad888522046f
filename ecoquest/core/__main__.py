"""
EcoQuest - 服务端入口
python -m ecoquest.core
"""
import asyncio
from .system import main

if __name__ == "__main__":
    asyncio.run(main())
