"""
核心業務邏輯層

這個 package 包含所有核心業務邏輯，包括：
- RoundEngine：回合狀態機（開盤、下注准入、開獎、結算）
- RoundScheduler：驅動回合計時
- RoundStore / Ledger：回合、下注、餘額的持久化
- BroadcastChannel：回合事件推播
- Locks：並發控制工具
"""
