"""检索层：相似度计算、图片启发式与上下文检索引擎。"""
