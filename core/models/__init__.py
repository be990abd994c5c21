# 导入用户模型
from .user import User
# 导入登录会话模型
from .auth_session import AuthSession
# 导入每日用量模型
from .usage_daily import UsageDaily
# 导入客户端错误日志模型
from .error_log import ErrorLog
# 导入基础模型
from .base import *
