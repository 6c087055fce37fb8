"""
审批接口
审批流程本身由外部协作方实现；这里只定义两个调用点，并通过 app.extensions 注入。
"""
from flask import current_app

_EXTENSION_KEY = 'kardex_approval'


class ApprovalGateway:
    """默认实现：不需要审批"""

    def evaluate_requires_approval(self, entity_type, entity_id, context, user_id, tenant_id):
        """
        :return: None 表示无需审批，否则返回流程标识 (workflow)
        """
        return None

    def start_approval(self, workflow, entity_type, entity_id, metadata, user_id, tenant_id, tx):
        """
        在调用方事务 tx 中启动审批实例
        默认不创建任何实例，返回 None；接入审批流程时覆盖此方法。
        """
        return None


def init_approval(app, gateway):
    app.extensions[_EXTENSION_KEY] = gateway


def get_gateway():
    """未注入时返回默认实现"""
    return current_app.extensions.get(_EXTENSION_KEY) or ApprovalGateway()
