"""
引擎异常
对外操作失败时抛出的类型化异常，API 层据此映射 HTTP 状态码
"""


class QuestEngineError(Exception):
    """任务引擎异常基类"""


class NotFoundError(QuestEngineError):
    """引用的对象不存在"""

    def __init__(self, kind: str, ident: str):
        self.kind = kind
        self.ident = ident
        super().__init__(f"{kind} not found: {ident}")


class QuestNotFound(NotFoundError):
    def __init__(self, quest_id: str):
        super().__init__("quest", quest_id)


class TemplateNotFound(NotFoundError):
    def __init__(self, template_id: str):
        super().__init__("template", template_id)


class UserNotFound(NotFoundError):
    def __init__(self, user_id: str):
        super().__init__("user", user_id)


class AlreadyActive(QuestEngineError):
    """同一任务 (或同模板任务) 已在进行中"""

    def __init__(self, quest_id: str):
        self.quest_id = quest_id
        super().__init__(f"quest already active: {quest_id}")


class CapReached(QuestEngineError):
    """用户同时进行的任务数已达上限"""

    def __init__(self, user_id: str, cap: int):
        self.user_id = user_id
        self.cap = cap
        super().__init__(f"user {user_id} already has {cap} active quests")


class InvalidTransition(QuestEngineError):
    """生命周期只允许向前迁移"""

    def __init__(self, quest_id: str, current: str, target: str):
        self.quest_id = quest_id
        self.current = current
        self.target = target
        super().__init__(f"quest {quest_id}: cannot move from {current} to {target}")


class StoreUnavailable(QuestEngineError):
    """持久化层写入失败"""


class InsufficientPoints(QuestEngineError):
    def __init__(self, needed: int, available: int):
        self.needed = needed
        self.available = available
        super().__init__(f"need {needed} points, have {available}")
