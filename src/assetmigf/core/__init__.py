"""迁移核心：模型、存储、锁、检查点、变更日志、匹配、回滚与编排"""
