"""
服務層

這個 package 包含純計算與唯讀查詢邏輯，不負責狀態轉換：
- WagerEvaluator：開獎結果推導、輸贏與賠率判定
- HistoryService：回合歷史、下注紀錄、使用者統計
"""
