"""
本地 Runtime（后台 worker + Unix socket JSON-RPC）。

实现定位：
- 每个命名 server 一个后台 worker 进程，持有一条常驻的上游 MCP 连接；
- 短生命周期的 CLI 调用经 Unix socket 复用该连接，避免每次重新 spawn 上游 server；
- 不追求网络暴露/鉴权；安全边界为本机文件系统权限（socket 0600）。
"""
